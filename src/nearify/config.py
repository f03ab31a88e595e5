"""Application settings loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Exam protocol, calibration and Ollama settings, from .env or the environment."""

    # Exam protocol
    staircase_start_index: int = 6
    jcc_start_axis: int = 90
    line_length: int = 5

    # Calibration defaults, used until the patient calibrates
    viewing_distance_cm: float = 60.0
    pixels_per_cm: float = 37.8

    # Ollama (optional pacing hints)
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "mistral"
    pacing_hints_enabled: bool = False

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
