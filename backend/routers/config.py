"""Configuration API endpoints"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from services.config_manager import ConfigManager
from services.llm_service import SUPPORTED_PROVIDERS, LLMService
from services.retry_policy import LLMAPIError, RetryExhaustedError

router = APIRouter()


class ConfigUpdateRequest(BaseModel):
    """Request to update configuration"""

    provider: str | None = None
    anthropic: dict | None = None
    openai: dict | None = None
    vllm: dict | None = None
    stages: dict | None = None
    retry: dict | None = None
    sandbox: dict | None = None
    pipeline: dict | None = None


class ConfigResponse(BaseModel):
    """Configuration response"""

    provider: str
    anthropic: dict
    openai: dict
    vllm: dict
    stages: dict
    retry: dict
    sandbox: dict
    pipeline: dict


class ValidateResponse(BaseModel):
    """Validation response"""

    valid: bool
    message: str
    provider: str


def mask_key(key: str) -> str:
    if not key:
        return ""
    if len(key) <= 8:
        return "*" * len(key)
    return key[:4] + "*" * (len(key) - 8) + key[-4:]


@router.get("", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration"""
    config = ConfigManager.get_instance().get_config()

    # Mask API keys for security
    providers = {}
    for name in SUPPORTED_PROVIDERS:
        section = config.get(name, {}).copy()
        section["apiKey"] = mask_key(section.get("apiKey", ""))
        providers[name] = section

    return ConfigResponse(
        provider=config.get("provider", "anthropic"),
        stages=config.get("stages", {}),
        retry=config.get("retry", {}),
        sandbox=config.get("sandbox", {}),
        pipeline=config.get("pipeline", {}),
        **providers,
    )


@router.put("")
async def update_config(request: ConfigUpdateRequest) -> dict[str, Any]:
    """Update configuration"""
    if request.provider and request.provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=400, detail=f"Unsupported provider: {request.provider}")

    # Only provided fields; sections are merged into the stored ones
    update = request.model_dump(exclude_none=True)
    try:
        ConfigManager.get_instance().save_config(update)
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"status": "success", "message": "Configuration updated"}


@router.post("/validate", response_model=ValidateResponse)
async def validate_config() -> ValidateResponse:
    """Validate current configuration by testing LLM connection"""
    config = ConfigManager.get_instance().get_config()
    provider = config.get("provider", "anthropic")
    # One attempt is enough to tell whether the provider answers
    config["retry"] = {**config.get("retry", {}), "maxAttempts": 1}

    try:
        llm_service = LLMService(config)
        response = await llm_service.call(
            "Reply with the single word OK.",
            "Say 'OK' if you can hear me.",
            "Config validation",
            "STAGE_0_CONTEXT_GATHERER",
        )
    except (ValueError, LLMAPIError, RetryExhaustedError) as e:
        return ValidateResponse(
            valid=False,
            message=f"Connection failed: {str(e)}",
            provider=provider,
        )

    if response and len(response) > 0:
        return ValidateResponse(
            valid=True,
            message=f"Successfully connected to {provider}",
            provider=provider,
        )
    return ValidateResponse(
        valid=False,
        message="Received empty response from LLM",
        provider=provider,
    )
