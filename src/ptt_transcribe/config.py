from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE_PATH = Path.home() / ".config" / "ptt-transcribe" / "env"


class TranscribeConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PTT_TRANSCRIBE_",
        env_file=ENV_FILE_PATH,
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    deepgram_api_key: str = Field(
        default="",
        repr=False,
        validation_alias=AliasChoices("PTT_TRANSCRIBE_DEEPGRAM_API_KEY", "DEEPGRAM_API_KEY"),
    )
    deepgram_api_key_file: str = ""
    deepgram_model: str = "nova-3"
    language: str = "en-US"

    sample_rate: int = Field(default=16000, gt=0)
    block_size: int = Field(default=4096, gt=0)
    capture_device: str = ""
    max_queued_blocks: int = Field(default=32, gt=0)

    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    finalize_grace_seconds: float = Field(default=0.5, ge=0)

    socket_path: str = "/tmp/ptt-transcribe.sock"
    log_file: str = ""

    def read_secret(self, path: str) -> str:
        if not path:
            return ""
        try:
            with open(path) as f:
                return f.read().strip()
        except FileNotFoundError:
            return ""

    def resolve_api_key(self) -> str:
        if self.deepgram_api_key:
            return self.deepgram_api_key.strip()
        return self.read_secret(self.deepgram_api_key_file)
