from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./designs.db"

    # External collaborators
    CALC_ENGINE_URL: str = "http://localhost:5000/formulas/api"
    DESIGN_API_URL: str = "http://localhost:5000/new_design/api"
    ADVANCED_API_URL: str = "http://localhost:5000/advanced/formulas/api"
    SPECIES_API_URL: str = "http://localhost:5000/species/api"
    API_TOKEN: str = ""  # Bearer token forwarded to the engine and design API

    # Live preview endpoints, relative to /projects/{project_id}/ on each base
    PREVIEW_PATH_INPUTS: str = "production-calculations/live"
    PREVIEW_PATH_BIOFILTER: str = "step7/live"
    PREVIEW_PATH_PUMPS: str = "step8/live"

    # Live preview
    PREVIEW_DEBOUNCE_MS: int = 400
    PREVIEW_TIMEOUT_SECONDS: float = 12.0
    PREVIEW_MAX_RETRIES: int = 1  # one retry, never a loop
    PREVIEW_RETRY_BACKOFF_MS: int = 300

    COMMIT_TIMEOUT_SECONDS: float = 30.0
    REPORT_TIMEOUT_SECONDS: float = 30.0

    class Config:
        env_file = ".env"


settings = Settings()
