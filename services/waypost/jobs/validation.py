"""Structural validation of jobs submitted by clients."""

from waypost.errors import FailedPreconditionError
from waypost.protocol.jobs import Job, ReleaseOp


def job_problems(job: Job) -> list[str]:
    """Return every rule the job breaks, as 'field: reason' strings."""
    problems: list[str] = []

    if job.id:
        problems.append("id: must be empty")
    if job.application is None or not job.application.application:
        problems.append("application: cannot be blank")
    elif not job.application.project:
        problems.append("application.project: cannot be blank")
    if job.workspace is None or not job.workspace.workspace:
        problems.append("workspace: cannot be blank")
    if job.target_runner is None or job.target_runner.target is None:
        problems.append("target_runner: cannot be blank")
    if job.operation is None:
        problems.append("operation: cannot be blank")
    if job.data_source is not None and job.data_source.source is None:
        problems.append("data_source.source: cannot be blank")

    if isinstance(job.operation, ReleaseOp) and job.operation.traffic_split is not None:
        try:
            job.operation.traffic_split.validate_split()
        except ValueError as e:
            problems.append(f"release.traffic_split: {e}")

    return problems


def validate_job(job: Job) -> None:
    """Validate a job before it is queued.

    Raises:
        FailedPreconditionError: Listing every broken rule.
    """
    problems = job_problems(job)
    if problems:
        raise FailedPreconditionError("; ".join(problems) + ".")
