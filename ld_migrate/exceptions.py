"""Exception classes for the migration tool."""


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class APIError(MigrationError):
    """Raised when the remote API returns an unusable response."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code if available
            response_text: Response body text if available
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_text = response_text

    def __str__(self) -> str:
        """String representation of the error."""
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.response_text:
            # Truncate response text for readability
            response_preview = self.response_text[:200]
            if len(self.response_text) > 200:
                response_preview += "..."
            parts.append(f"Response: {response_preview}")
        return " | ".join(parts)


class ProjectConflictError(APIError):
    """Raised when the destination project key is already taken (409 on create).

    The project state is ambiguous at that point, so the whole run stops.
    """

    def __init__(self, project_key: str | None = None, response_text: str | None = None):
        message = (
            "It looks like this project has already been created in the destination. "
            "To avoid errors and possible overwrite, either choose a new destination "
            "project key or delete the existing project in the destination instance"
        )
        if project_key:
            message = f"{message} (project: {project_key})"
        super().__init__(message, status_code=409, response_text=response_text)
        self.project_key = project_key


class ConflictLimitError(MigrationError):
    """Raised when a resource keeps colliding after its single automatic rename."""

    def __init__(self, resource_type: str, original_key: str, attempts: int) -> None:
        super().__init__(
            f"{resource_type} '{original_key}' conflicted {attempts} times; "
            "refusing to retry again"
        )
        self.resource_type = resource_type
        self.original_key = original_key
        self.attempts = attempts


class ConfigurationError(MigrationError):
    """Raised when the migration configuration is invalid."""

    pass


class SourceDataError(MigrationError):
    """Raised when extracted source project data is missing or unreadable."""

    pass
