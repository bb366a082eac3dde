"""Build the Recall.ai ``bot_config`` for a calendar event.

Pure function of the calendar's bot settings, the event's optional
transcription override, and the public URL that receives bot webhooks.
``join_at`` and leave-time metadata are added by the scheduler, not here.
"""

from __future__ import annotations

from typing import Any

from src.botsync.calendars.schemas import Calendar, CalendarEvent, TranscriptionMode

# Display-name fragments of other notetakers. When only matching
# participants remain, the bot leaves.
BOT_DETECTION_KEYWORDS: tuple[str, ...] = (
    "notetaker",
    "note taker",
    "recorder",
    "assistant",
    "bot",
    "ai ",
    " ai",
    "otter",
    "otter.ai",
    "fireflies",
    "fireflies.ai",
    "read.ai",
    "read ai",
    "fathom",
    "grain",
    "gong",
    "chorus",
    "avoma",
    "meetgeek",
    "krisp",
    "sembly",
    "tactiq",
    "tl;dv",
    "tldv",
    "vowel",
    "airgram",
    "jamie",
    "supernormal",
    "fellow",
    "nylas",
    "circleback",
    "bluedot",
    "meetrecord",
    "claap",
    "rewatch",
    "loom",
    "recall",
)

BOT_WEBHOOK_PATH = "/webhooks/recall-notes"
REALTIME_TRANSCRIPT_EVENTS = ["transcript.partial_data", "transcript.data"]


def _effective_transcription_mode(
    calendar: Calendar, event: CalendarEvent | None
) -> TranscriptionMode:
    if event is not None and event.transcription_mode is not None:
        return event.transcription_mode
    return calendar.transcription_mode or TranscriptionMode.REALTIME


def build_bot_config(
    calendar: Calendar,
    event: CalendarEvent | None = None,
    public_url: str | None = None,
) -> dict[str, Any]:
    """Build the provider bot configuration.

    Args:
        calendar: Calendar whose bot settings apply.
        event: Optional event carrying a per-meeting transcription override.
        public_url: Base URL for status and realtime transcript webhooks.

    Returns:
        Dict ready to send as ``bot_config``.
    """
    public_url = (public_url or "").rstrip("/") or None
    config: dict[str, Any] = {}

    if calendar.bot_name:
        config["bot_name"] = calendar.bot_name
    if calendar.bot_avatar_url:
        config["bot_image"] = calendar.bot_avatar_url

    recording: dict[str, Any] = {}
    if calendar.record_video:
        recording["video_mixed_mp4"] = {}
    if calendar.record_audio:
        recording["audio_mixed_mp3"] = {}

    if calendar.enable_transcription:
        language = calendar.transcription_language
        language_code = language if language and language != "auto" else None
        wants_realtime = (
            _effective_transcription_mode(calendar, event) == TranscriptionMode.REALTIME
        )
        # Low-latency streaming is English-only at the provider.
        if wants_realtime and language_code in (None, "en"):
            provider_mode = "prioritize_low_latency"
        else:
            provider_mode = "prioritize_accuracy"

        provider: dict[str, Any] = {"mode": provider_mode}
        if language_code:
            provider["language_code"] = language_code
        recording["transcript"] = {"provider": {"recallai_streaming": provider}}

        if wants_realtime and public_url:
            recording["realtime_endpoints"] = [
                {
                    "type": "webhook",
                    "url": f"{public_url}{BOT_WEBHOOK_PATH}",
                    "events": list(REALTIME_TRANSCRIPT_EVENTS),
                }
            ]

    config["recording_config"] = recording

    if public_url:
        config["status_callback_url"] = f"{public_url}{BOT_WEBHOOK_PATH}"

    if calendar.auto_leave_if_alone:
        timeout = calendar.auto_leave_alone_timeout_seconds or 60
        config["automatic_leave"] = {
            "waiting_room_timeout": timeout,
            "noone_joined_timeout": timeout,
            "everyone_left_timeout": timeout,
        }

    config["bot_detection"] = {
        "using_participant_names": {
            "keywords": list(BOT_DETECTION_KEYWORDS),
            "activate_after": 300,
            "timeout": 10,
        },
        "using_participant_events": {
            "types": ["active_speaker", "screen_share"],
            "activate_after": 300,
            "timeout": 30,
        },
    }

    return config
