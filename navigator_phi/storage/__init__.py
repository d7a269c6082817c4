"""Storage backends: in-memory and PostgreSQL (asyncpg)."""
