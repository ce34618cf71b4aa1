"""Centralized exit codes for the sinktrace CLI."""


class ExitCodes:
    """Standard exit codes for sinktrace commands."""

    SUCCESS = 0

    INSUFFICIENT = 1
    CRITICAL_SEVERITY = 2

    TASK_INCOMPLETE = 3

    @classmethod
    def get_description(cls, code: int) -> str:
        """Get human-readable description for an exit code."""
        descriptions = {
            cls.SUCCESS: "Success - No insufficiently neutralized flows",
            cls.INSUFFICIENT: "Insufficiently neutralized flows detected",
            cls.CRITICAL_SEVERITY: "Insufficiently neutralized flow into a critical sink",
            cls.TASK_INCOMPLETE: "Analysis incomplete - every function failed",
        }
        return descriptions.get(code, f"Unknown exit code: {code}")
