"""Configuration settings for specimen tracking."""

import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    host = os.environ.get("DB_HOST", "localhost")
    port = 5433 if host == "localhost" else 5432
    password = os.environ.get("DB_PASSWORD", "specimen_pass")
    user = os.environ.get("DB_USER", "specimen_user")
    db_name = os.environ.get("DB_NAME", "specimen_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", "6379"))
    return dict(host=host, port=port)


def get_api_url():
    """Get API URL from environment variables."""
    host = os.environ.get("API_HOST", "localhost")
    port = int(os.environ.get("API_PORT", "8000"))
    return f"http://{host}:{port}"


def get_max_conflict_retries():
    """How many read-validate-write attempts before a conflict is surfaced."""
    return max(1, int(os.environ.get("MAX_CONFLICT_RETRIES", "3")))


def get_privileged_roles():
    """Roles allowed to run privileged actions such as amend_result."""
    roles = os.environ.get("PRIVILEGED_ROLES", "lab_manager,admin")
    return {role.strip().lower() for role in roles.split(",") if role.strip()}
