"""Progress fractions, icons and localized labels per request status."""

from typing import Dict, NamedTuple

from bedtime.models.story_request import RequestStatus


class StatusDisplay(NamedTuple):
    label_key: str
    icon: str
    progress: float


STATUS_DISPLAY: Dict[RequestStatus, StatusDisplay] = {
    RequestStatus.QUEUED: StatusDisplay("generating.queued", "⏳", 0.1),
    RequestStatus.PROCESSING: StatusDisplay("generating.processing", "⚙️", 0.15),
    RequestStatus.GENERATING_TEXT: StatusDisplay("generating.generatingText", "✍️", 0.3),
    RequestStatus.GENERATING_IMAGES: StatusDisplay("generating.generatingImages", "🎨", 0.6),
    RequestStatus.RENDERING_CLIPS: StatusDisplay("generating.renderingClips", "🎬", 0.85),
    RequestStatus.FINISHED: StatusDisplay("generating.finished", "🎉", 1.0),
    RequestStatus.FAILED: StatusDisplay("generating.failed", "❌", 0.0),
}

TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "de": {
        "generating.queued": "Deine Geschichte wartet auf den Start...",
        "generating.processing": "Geschichte wird vorbereitet...",
        "generating.generatingText": "Geschichte wird geschrieben...",
        "generating.generatingImages": "Bilder werden gemalt...",
        "generating.renderingClips": "Clips werden erstellt...",
        "generating.finished": "Fertig!",
        "generating.failed": "Da ist etwas schiefgelaufen",
    },
    "en": {
        "generating.queued": "Your story is waiting to start...",
        "generating.processing": "Preparing your story...",
        "generating.generatingText": "Writing the story...",
        "generating.generatingImages": "Painting the pictures...",
        "generating.renderingClips": "Rendering clips...",
        "generating.finished": "Done!",
        "generating.failed": "Something went wrong",
    },
}

FALLBACK_LOCALE = "en"


def translate(key: str, locale: str) -> str:
    """Look up key for locale, falling back to English, then the key itself."""
    language = (locale or FALLBACK_LOCALE).split("-")[0].lower()
    table = TRANSLATIONS.get(language, TRANSLATIONS[FALLBACK_LOCALE])
    return table.get(key) or TRANSLATIONS[FALLBACK_LOCALE].get(key, key)


def describe_status(status: RequestStatus, locale: str) -> Dict[str, object]:
    """Label, icon and progress for one status."""
    display = STATUS_DISPLAY[status]
    return {
        "label": translate(display.label_key, locale),
        "icon": display.icon,
        "progress": display.progress,
    }
