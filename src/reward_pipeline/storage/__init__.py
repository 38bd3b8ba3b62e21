"""SQLModel storage: tables, engine policy and migrations."""
