"""
Rule configuration: sources, the versioned repository, and the poller.

  rules/sources.py    — ``RuleSource`` protocol plus TOML and SQLite sources.
  rules/repository.py — ``RuleRepository``: copy-on-write, version-stamped
                        snapshots per context type.
  rules/poller.py     — ``RulePoller``: background thread that refreshes the
                        repository on an interval.
"""
