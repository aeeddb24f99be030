"""ID generation utilities."""

from uuid import uuid4


def new_job_id() -> str:
    """Create a job id shared by every unit dispatched for one request."""
    return str(uuid4())
