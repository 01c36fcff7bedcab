"""stash-mirror core package.

Modules:
- source: GraphQL client for upstream Stash instances
- sync: full / incremental / smart sync orchestration
- upsert: page-at-a-time entity writes
- derived: inherited tags and gallery to image inheritance
- exclusions: per-user precomputed exclusions
- query: filtered, sorted, paginated reads with user overlay
- scheduler: periodic background sync
- api: FastAPI surface
- config: INI parsing and config object
"""
