"""Setup configuration for the Wardcord auto-moderation bot."""

from setuptools import setup, find_packages

setup(
    name="wardcord",
    version="0.1.0",
    description="A Discord bot for rule-based auto-moderation with durable reversal jobs",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "py-cord>=2.6",
        "aiosqlite>=0.20",
        "redis>=5.0.1",
        "regex>=2024.4.16",
        "PyYAML>=6.0",
        "python-dotenv>=1.0",
        "prompt_toolkit>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "fakeredis>=2.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "wardcord=wardcord.main:main",
        ],
    },
)
