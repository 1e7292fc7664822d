"""SQL schema migrations applied by migrate.run_migrations."""
