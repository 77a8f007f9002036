from pydantic_settings import BaseSettings
from typing import List, Dict, Any, Optional
import json


def parse_step_types(v: Any) -> List[str]:
    """Parse fan-out step types from string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        # Try JSON parsing first
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Fall back to comma-separated
        return [step.strip() for step in v.split(',') if step.strip()]
    return []


def parse_template_images(v: str) -> Dict[str, str]:
    """Parse sandbox template images from format: template1=image1,template2=image2"""
    if not v:
        return {}
    images = {}
    for item in v.split(','):
        if '=' in item:
            template, image = item.strip().split('=', 1)
            images[template.strip()] = image.strip()
    return images


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "AppForge"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_VERSION: str = "v1"

    # ==========================================
    # Database
    # ==========================================
    DATABASE_URL: str
    DB_ECHO: bool = False

    # ==========================================
    # Redis
    # ==========================================
    REDIS_URL: str = "redis://localhost:6379/0"

    # ==========================================
    # Celery
    # ==========================================
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    CELERY_TASK_TIME_LIMIT: int = 3600  # 1 hour
    CELERY_TASK_SOFT_TIME_LIMIT: int = 3000  # 50 minutes
    CELERY_RESULT_EXPIRES: int = 86400  # 24 hours

    # ==========================================
    # Claude AI
    # ==========================================
    ANTHROPIC_API_KEY: str
    ANTHROPIC_BASE_URL: str = ""  # Empty means use default Anthropic URL
    CLAUDE_AGENT_MODEL: str = "claude-sonnet-4-20250514"
    CLAUDE_ANALYSIS_MODEL: str = "claude-3-5-haiku-20241022"
    CLAUDE_MAX_TOKENS: int = 8192
    CLAUDE_REQUEST_TIMEOUT: int = 300  # seconds
    CLAUDE_CONNECT_TIMEOUT: int = 60  # seconds
    CLAUDE_MAX_RETRIES: int = 5
    CLAUDE_RETRY_BASE_DELAY: float = 2.0  # seconds
    CLAUDE_RETRY_MAX_DELAY: float = 30.0  # seconds

    # ==========================================
    # Agent Loop
    # ==========================================
    AGENT_MAX_ITERATIONS: int = 15
    AGENT_TEMPERATURE: float = 0.1
    AGENT_COMPLETION_MARKER: str = "<task_summary>"

    # ==========================================
    # Rolling Summary / Digest
    # ==========================================
    DIGEST_MAX_BYTES: int = 3000
    MANIFEST_MAX_UPDATE_ATTEMPTS: int = 5

    # ==========================================
    # Conversation Context
    # ==========================================
    CONVERSATION_WINDOW: int = 10
    FILE_PREVIEW_CHARS: int = 500

    # ==========================================
    # Sandbox
    # ==========================================
    SANDBOX_TEMPLATE: str = "builder-2"
    SANDBOX_TEMPLATE_IMAGES_STR: str = "builder-2=node:20-bookworm"
    SANDBOX_DOCKER_HOST: str = ""  # e.g., "tcp://10.0.10.x:2375"; empty uses local docker
    SANDBOX_NETWORK: str = "appforge-sandbox"
    SANDBOX_PUBLIC_HOST: str = "localhost"
    SANDBOX_PREVIEW_SCHEME: str = "https"
    SANDBOX_PREVIEW_PORT: int = 3000
    SANDBOX_WORKDIR: str = "/home/user"
    SANDBOX_MEMORY_LIMIT: str = "1g"
    SANDBOX_COMMAND_TIMEOUT: int = 300  # seconds
    SANDBOX_TTL_SECONDS: int = 3600  # lifetime cap of a sandbox container

    @property
    def SANDBOX_TEMPLATE_IMAGES(self) -> Dict[str, str]:
        """Parse template -> image mapping from comma-separated string"""
        return parse_template_images(self.SANDBOX_TEMPLATE_IMAGES_STR)

    # ==========================================
    # Fan-out / Convergence
    # ==========================================
    FANOUT_STEP_TYPES_STR: str = "frontend,backend,database"
    FANOUT_BRANCH_TIMEOUT_SECONDS: float = 1800  # 30 minutes

    @property
    def FANOUT_STEP_TYPES(self) -> List[str]:
        """Parse fan-out step types from comma-separated string"""
        return parse_step_types(self.FANOUT_STEP_TYPES_STR)

    # ==========================================
    # Sandbox Assembly
    # ==========================================
    ASSEMBLY_SCHEMA_FILE: str = "prisma/schema.prisma"
    ASSEMBLY_SCHEMA_COMMAND: str = "npx prisma generate"
    ASSEMBLY_INSTALL_COMMAND: str = "pnpm install"
    ASSEMBLY_START_COMMAND: str = "pnpm dev"

    # ==========================================
    # GitHub
    # ==========================================
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_ACCESS_TOKEN: str = ""
    GITHUB_DEFAULT_BRANCH: str = "main"
    GITHUB_COMMIT_MESSAGE: str = "chore(builder): auto-sync generated files"

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    def get_template_image(self, template_id: Optional[str] = None) -> str:
        """Resolve the container image backing a sandbox template id"""
        template_id = template_id or self.SANDBOX_TEMPLATE
        return self.SANDBOX_TEMPLATE_IMAGES.get(template_id, template_id)


settings = Settings()
