from typing import Optional


class CheckinError(Exception):
    """Base class for errors raised by the check-in call engine."""


class ConfigurationError(CheckinError):
    """Missing credential or invalid setting. Never retried automatically."""


class MissingContactError(ConfigurationError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No phone number found for user {user_id}")


class ScheduleNotFoundError(CheckinError):
    def __init__(self, schedule_id: str) -> None:
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id} not found")


class ProviderCallError(CheckinError):
    """The voice provider rejected the call or could not be reached.

    The call record has already been moved to ``failed`` with ``detail``
    stored as its error message when this is raised.
    """

    def __init__(self, call_id: str, detail: str, status_code: Optional[int] = None) -> None:
        self.call_id = call_id
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"Voice provider call failed for call {call_id}: {detail}")


class WebhookSignatureError(CheckinError):
    pass


class WebhookPayloadError(CheckinError):
    pass
