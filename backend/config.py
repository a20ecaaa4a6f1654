"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No audio constants (see constants.py)
- No runtime mutation
- No user-tunable audio settings (see session/settings.py)
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _optional_int(raw: str | None) -> int | str | None:
    """Device selectors may be an index or a name substring."""
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return raw


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the supervisor and the control API.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Live streaming endpoint
    # ------------------------------------------------------------------

    live_api_key: str | None
    live_api_url: str
    live_model: str
    live_voice: str
    system_instruction: str

    # ------------------------------------------------------------------
    # Summarization (OpenAI-compatible chat completions)
    # ------------------------------------------------------------------

    summary_api_key: str | None
    summary_base_url: str | None
    summary_model: str

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Local storage
    # ------------------------------------------------------------------

    settings_path: str
    recordings_dir: str

    # ------------------------------------------------------------------
    # Devices / connectivity
    # ------------------------------------------------------------------

    input_device: int | str | None
    output_device: int | str | None
    connectivity_check_host: str
    connectivity_check_interval_s: float

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Missing credentials are allowed here; the supervisor reports them
        as a configuration error when a session is started.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            live_api_key=os.environ.get("LIVE_API_KEY"),
            live_api_url=os.environ.get(
                "LIVE_API_URL",
                "wss://generativelanguage.googleapis.com/ws/"
                "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent",
            ),
            live_model=os.environ.get(
                "LIVE_MODEL", "models/gemini-2.5-flash-native-audio-preview-12-2025"
            ),
            live_voice=os.environ.get("LIVE_VOICE", "Kore"),
            system_instruction=os.environ.get("SYSTEM_INSTRUCTION", ""),

            summary_api_key=os.environ.get("SUMMARY_API_KEY"),
            summary_base_url=os.environ.get("SUMMARY_BASE_URL") or None,
            summary_model=os.environ.get("SUMMARY_MODEL", "gpt-4o-mini"),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",

            settings_path=os.environ.get(
                "SETTINGS_PATH", os.path.expanduser("~/.live_chat_audio_settings.json")
            ),
            recordings_dir=os.environ.get("RECORDINGS_DIR", "recordings"),

            input_device=_optional_int(os.environ.get("INPUT_DEVICE")),
            output_device=_optional_int(os.environ.get("OUTPUT_DEVICE")),
            connectivity_check_host=os.environ.get("CONNECTIVITY_CHECK_HOST", "8.8.8.8"),
            connectivity_check_interval_s=float(
                os.environ.get("CONNECTIVITY_CHECK_INTERVAL_S", "5.0")
            ),
        )
