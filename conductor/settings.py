import os


def get_from_env(key: str, default: str) -> str:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value


CONFIG_FILE_NAME = get_from_env("CONDUCTOR_CONFIG", "conductor.yml")

# Seconds a component gets to exit after SIGTERM before it is killed.
GRACE_PERIOD = float(get_from_env("CONDUCTOR_GRACE_PERIOD", "5"))

LOG_LEVEL = get_from_env("CONDUCTOR_LOG_LEVEL", "WARNING").upper()
LOGGING_FORMATTER_NAME = get_from_env("LOGGING_FORMATTER_NAME", "default")

# Exit status reported when the stack was stopped by SIGINT/SIGTERM.
INTERRUPTED_EXIT_CODE = 130
