import logging

from pulse.core.exceptions import ValidationError
from pulse.schemas.event import EventIn, NewEvent

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
DEFAULT_EVENT_NAME = "pageview"

# Ordered: first substring match wins
BROWSER_MARKERS: tuple[tuple[str, str], ...] = (
    ("Chrome", "Chrome"),
    ("Firefox", "Firefox"),
    ("Safari", "Safari"),
    ("Edge", "Edge"),
)
OS_MARKERS: tuple[tuple[str, str], ...] = (
    ("Windows", "Windows"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
    ("Android", "Android"),
    ("iOS", "iOS"),
)

REQUIRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("project_id", "projectId"),
    ("url", "url"),
    ("session_id", "sessionId"),
)


def _first_match(user_agent: str, markers: tuple[tuple[str, str], ...]) -> str:
    for needle, label in markers:
        if needle in user_agent:
            return label
    return UNKNOWN


def detect_browser(user_agent: str | None) -> str:
    return _first_match(user_agent or "", BROWSER_MARKERS)


def detect_os(user_agent: str | None) -> str:
    return _first_match(user_agent or "", OS_MARKERS)


class EventService:
    """Ingestion boundary: validates and enriches tracking payloads.

    Nothing past this point sees a loosely-typed payload.
    """

    @staticmethod
    def validate(data: EventIn) -> None:
        """Raise ValidationError naming every missing or blank required field."""
        missing = [
            public_name
            for attr, public_name in REQUIRED_FIELDS
            if not (getattr(data, attr) or "").strip()
        ]
        if missing:
            raise ValidationError.missing(missing)

    @classmethod
    def build(
        cls,
        data: EventIn,
        *,
        country: str | None = None,
        header_user_agent: str | None = None,
    ) -> NewEvent:
        """Turn a raw payload into a fixed-shape event.

        Country comes only from the trusted edge header; the user agent from
        the payload wins over the request header.
        """
        cls.validate(data)
        user_agent = data.user_agent or header_user_agent or ""
        referrer = (data.referrer or "").strip() or None
        return NewEvent(
            project_id=data.project_id.strip(),  # type: ignore[union-attr]
            event_name=(data.event_name or "").strip() or DEFAULT_EVENT_NAME,
            url=data.url.strip(),  # type: ignore[union-attr]
            referrer=referrer,
            session_id=data.session_id.strip(),  # type: ignore[union-attr]
            country=(country or "").strip() or UNKNOWN,
            browser=detect_browser(user_agent),
            os=detect_os(user_agent),
        )
