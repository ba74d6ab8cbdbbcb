"""Redis-backed state shared by every shard: counters, locks and cached config."""
