from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Courseport"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./courseport.db"

    # Framework settings
    framework_dir: Path = Path("framework")
    framework_version: str = "5.0.0"  # used when framework_dir has no package.json
    compiler_command: str = "npx grunt server-build:{mode} --theme={theme} --menu={menu}"

    # Build settings
    build_dir: Path = Path("data/builds")
    build_lifespan_seconds: int = 7 * 24 * 60 * 60

    # Storage settings
    upload_temp_dir: Path = Path("data/uploads")
    asset_dir: Path = Path("data/assets")
    default_language: str = "en"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
