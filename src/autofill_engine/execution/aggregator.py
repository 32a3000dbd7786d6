"""Builds typed job results from verification outcomes."""

from typing import Optional

from autofill_engine.core.models import ExecutionResult, ResultStatus, SubmissionResult


class ResultAggregator:
    """Converts job outcomes into ``ExecutionResult`` records."""

    def to_result(
        self,
        url: str,
        submission: SubmissionResult,
        filled_fields: int,
        total_fields: int,
        duration: float,
        attempts: int = 1,
        screenshot_path: Optional[str] = None,
        mapped_fields: Optional[int] = None,
    ) -> ExecutionResult:
        """
        Classify a verified submission.

        Success needs a verified submission with every mapped field filled;
        a verified submission where some mapped field could not be filled is
        partial. Fields the profile has no value for do not count against
        success. ``mapped_fields`` defaults to ``total_fields``.
        """
        expected = total_fields if mapped_fields is None else mapped_fields
        if not submission.success:
            status = ResultStatus.FAILURE
            message = "; ".join(submission.error_indicators) or "No success signal after submission"
        elif filled_fields >= expected:
            status = ResultStatus.SUCCESS
            message = None
        else:
            status = ResultStatus.PARTIAL
            message = f"Filled {filled_fields} of {expected} mapped fields"

        return ExecutionResult(
            url=url,
            status=status,
            filled_fields=filled_fields,
            total_fields=total_fields,
            duration=duration,
            attempts=attempts,
            error_message=message,
            screenshot_path=screenshot_path,
        )

    def failure_result(
        self,
        url: str,
        message: str,
        duration: float,
        attempts: int,
        filled_fields: int = 0,
        total_fields: int = 0,
        screenshot_path: Optional[str] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            url=url,
            status=ResultStatus.FAILURE,
            filled_fields=filled_fields,
            total_fields=total_fields,
            duration=duration,
            attempts=attempts,
            error_message=message,
            screenshot_path=screenshot_path,
        )

    def skipped_result(self, url: str, reason: str, duration: float = 0.0, attempts: int = 0) -> ExecutionResult:
        return ExecutionResult(
            url=url,
            status=ResultStatus.SKIPPED,
            duration=duration,
            attempts=attempts,
            error_message=reason,
        )
