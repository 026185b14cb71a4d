from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from descgate.service.products import BRAND_TONES, DESCRIPTION_LENGTHS, LANGUAGES

# Maximum nested JSON depth accepted in free-form product payloads
MAX_JSON_DEPTH = 10
MAX_ARRAY_ITEMS = 100
MAX_STRING_LENGTH = 4096


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)
    elif isinstance(obj, str) and len(obj) > MAX_STRING_LENGTH:
        raise ValueError("string value too long")


class _WireModel(BaseModel):
    """Request bodies use camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


AuthAction = Literal["authenticate", "verify", "verify_admin", "refresh", "logout"]

UserAction = Literal[
    "get_usage",
    "increment_usage",
    "create_user",
    "reset_usage",
    "get_all_users",
    "update_user_role",
    "delete_user",
    "revoke_sessions",
]


class AuthRequest(_WireModel):
    action: AuthAction
    id_token: Optional[str] = Field(default=None, alias="idToken", max_length=8192)
    csrf_token: Optional[str] = Field(default=None, alias="csrfToken", max_length=256)
    timestamp: Optional[int] = None


class UserRequest(_WireModel):
    action: UserAction
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=128)
    email: Optional[str] = Field(default=None, max_length=320)
    target_user_id: Optional[str] = Field(default=None, alias="targetUserId", max_length=128)
    role: Optional[str] = Field(default=None, max_length=16)
    amount: int = Field(default=1, ge=1, le=100)


class BarcodeLookupRequest(_WireModel):
    barcode: str = Field(..., max_length=32)


class DescribeRequest(_WireModel):
    product: Dict[str, Any]
    language: str = "english"
    brand_tone: str = Field(default="professional", alias="brandTone")
    description_length: str = Field(default="medium", alias="descriptionLength")
    target_audience: Optional[str] = Field(default=None, alias="targetAudience", max_length=200)
    key_features: List[str] = Field(default_factory=list, alias="keyFeatures", max_length=20)

    @field_validator("product")
    @classmethod
    def _validate_product(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value

    @field_validator("language")
    @classmethod
    def _validate_language(cls, value: str) -> str:
        lowered = value.lower()
        if lowered not in LANGUAGES:
            raise ValueError("unsupported language")
        return lowered

    @field_validator("brand_tone")
    @classmethod
    def _validate_tone(cls, value: str) -> str:
        if value not in BRAND_TONES:
            raise ValueError("unknown brand tone")
        return value

    @field_validator("description_length")
    @classmethod
    def _validate_length(cls, value: str) -> str:
        if value not in DESCRIPTION_LENGTHS:
            raise ValueError("unknown description length")
        return value
