"""SQLite storage primitives shared by dispatch repositories."""
