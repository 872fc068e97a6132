"""CLI command implementations (run_* functions returning exit codes)."""
