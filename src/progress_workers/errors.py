"""Domain errors raised by the progress aggregation core."""


class ProgressError(Exception):
    """Base class for progress aggregation failures."""


class UserNotFoundError(ProgressError):
    """The owning user could not be resolved, so no baseline is available."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class InvalidJobPayloadError(ProgressError):
    """A job payload did not satisfy its contract. Retrying cannot fix it."""
