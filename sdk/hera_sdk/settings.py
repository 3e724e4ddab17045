"""
Configuration for HERA SDK.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    """Client configuration loaded from environment."""

    base_url: str = Field(default="http://localhost:8080", description="HERA server URL")
    organization_id: str | None = Field(default=None, description="Default organization")
    actor_user_id: str | None = Field(default=None, description="Default actor for writes")
    timeout: float = Field(default=30.0, description="Request timeout seconds")

    # Send the organization as the session header so the server can reject mismatches
    session_header: str | None = Field(
        default="X-Organization-ID", description="Session organization header name"
    )

    model_config = {"env_prefix": "HERA_"}
