from files_control.tasks.cleanup import sweep_expired_records  # noqa: F401
