"""Environment-derived settings using pydantic-settings."""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class SharedConfig(BaseSettings):
    """Base settings shared by every entry point."""
    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class GeneratorSettings(SharedConfig):
    """Settings for the HTTP generator and the pipeline config file."""
    generator_api_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        validation_alias="GENERATOR_API_URL",
    )
    generator_model: str = Field(
        default="gemini-2.0-flash", validation_alias="GENERATOR_MODEL"
    )
    generator_api_key: str = Field(default="", validation_alias="GENERATOR_API_KEY")
    config_path: str = Field(
        default="workflow-builder.yaml", validation_alias="WORKFLOW_BUILDER_CONFIG"
    )
