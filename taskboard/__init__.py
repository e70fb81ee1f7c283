# Task board: ordered lanes of tasks, server-side reordering, optimistic client mirror
#
# Components:
#   schema.py      - Data model (TaskCard, Lane, MoveResult)
#   errors.py      - Error taxonomy (NotFound, InvalidLane, TransportFailure, ...)
#   store.py       - SQLite position ledger
#   resolver.py    - Reorder resolver (midpoint or renumber)
#   projection.py  - Optimistic client-side projection with per-attempt rollback
#   client.py      - HTTP client and fire-and-forget move dispatcher
#   events.py      - Live event fan-out and activity log
#   categorizer.py - Rule-based categorization and scoring-service reply parsing
#   config.py      - YAML + environment configuration
#   seed.py        - Demo data
