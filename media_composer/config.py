from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEDIA_COMPOSER_",
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,
    )

    app_name: str = "media-composer"
    host: str = "0.0.0.0"
    port: int = 8080

    # Publication
    public_base_url: str = ""
    output_dir: str = "/tmp/output"
    output_path_prefix: str = "output"
    tmp_dir: str = "/tmp/media-composer"
    debug_listing: bool = False

    # Remote assets
    fetch_timeout: float = 60.0
    fetch_connect_timeout: float = 10.0
    fetch_max_redirects: int = 5
    fetch_max_bytes: int = 512 * 1024 * 1024

    # Encoding engine
    ffmpeg_binary: str = "ffmpeg"
    check_engine_on_startup: bool = True
    stderr_tail_bytes: int = 64 * 1024
    encode_timeout: float | None = None

    # Style defaults
    default_resolution: str = "720x1280"
    default_fps: int = 24
    default_crf: int = 23
    default_preset: str = "veryfast"
    default_audio_bitrate: str = "128k"
    default_outfile_prefix: str = "out"
    overscan_factor: float = 1.06


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
