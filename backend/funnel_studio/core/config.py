from typing import List, Union
from pathlib import Path
from pydantic import AnyHttpUrl, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Funnel Studio"
    API_V1_STR: str = "/api/v1"
    APP_VERSION: str = "0.1.0"

    # Root directory for all Funnel Studio data
    # Can be overridden with FUNNEL_STUDIO_ROOT_DIR environment variable
    ROOT_DIR: Path = Path.home() / ".funnel-studio"

    # ComfyUI configuration
    COMFYUI_URL: str = "http://127.0.0.1:8188"
    # Seconds to wait for a single websocket frame before pinging ComfyUI
    COMFY_TIMEOUT_S: float = 10.0

    # Rendering backend used by the generation dispatcher: "comfy" or "simulated"
    RENDER_BACKEND: str = "comfy"
    SIMULATED_RENDER_DELAY_S: float = 0.0

    # Accept a stage when some (but not all) of its generation requests failed
    ALLOW_PARTIAL_STEPS: bool = False

    # BACKEND_CORS_ORIGINS is a JSON-formatted list of origins
    # e.g: '["http://localhost", "http://localhost:3000"]'
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    @validator("BACKEND_CORS_ORIGINS", pre=True)
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @validator("RENDER_BACKEND")
    def check_render_backend(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in ("comfy", "simulated"):
            raise ValueError(f"Unknown render backend: {v}")
        return value

    class Config:
        case_sensitive = True
        env_prefix = "FUNNEL_STUDIO_"

    @property
    def meta_dir(self) -> Path:
        """Directory for metadata files (database)."""
        return self.ROOT_DIR / "meta"

    @property
    def database_path(self) -> Path:
        """Path to the funnel SQLite database."""
        return self.meta_dir / "funnels.db"

    def ensure_dirs(self) -> None:
        """Create all required directories if they don't exist."""
        self.ROOT_DIR.mkdir(parents=True, exist_ok=True)
        self.meta_dir.mkdir(exist_ok=True)


settings = Settings()
