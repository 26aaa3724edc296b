# lensroom/model_catalog.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import commentjson

from lensroom.errors import ConfigurationError, ValidationError

CAPABILITIES = ("text", "image", "video", "edit", "upscale")
PROVIDERS = ("kie-market", "kie-veo", "llm")


@dataclass(frozen=True)
class ParamSpec:
    type: str  # "number" | "integer" | "string" | "boolean"
    default: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    options: Optional[tuple] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.default is not None:
            out["default"] = self.default
        if self.min is not None:
            out["min"] = self.min
        if self.max is not None:
            out["max"] = self.max
        if self.options is not None:
            out["options"] = list(self.options)
        return out


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    title: str
    provider: str
    capability: str
    enabled: bool
    credit_cost: int
    params_schema: Dict[str, ParamSpec] = field(default_factory=dict)
    requires_image: bool = False
    provider_model: Optional[str] = None  # upstream model name (e.g. "bytedance/seedream")

    @property
    def generation_kind(self) -> str:
        return "video" if self.capability == "video" else "photo"

    @property
    def is_text(self) -> bool:
        return self.capability == "text"

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "provider": self.provider,
            "capability": self.capability,
            "enabled": self.enabled,
            "creditCost": self.credit_cost,
            "requiresImage": self.requires_image,
            "paramsSchema": {k: v.to_dict() for k, v in self.params_schema.items()},
        }


#! BUILT-IN REGISTRY

DEFAULT_MODELS: List[ModelDefinition] = [
    # Text
    ModelDefinition(
        id="llm_text",
        title="LLM (Text)",
        provider="llm",
        capability="text",
        enabled=True,
        credit_cost=2,
        params_schema={
            "temperature": ParamSpec("number", default=0.7, min=0, max=1),
            "max_tokens": ParamSpec("integer", default=800, min=1, max=4096),
        },
    ),
    # Image
    ModelDefinition(
        id="seedream_image",
        title="Seedream (Image)",
        provider="kie-market",
        capability="image",
        enabled=True,
        credit_cost=8,
        provider_model="bytedance/seedream",
        params_schema={
            "image_size": ParamSpec(
                "string", default="square_hd", options=("square_hd", "square", "portrait", "landscape")
            ),
        },
    ),
    # Edit
    ModelDefinition(
        id="nano_banana_edit",
        title="Nano Banana Edit (Image)",
        provider="kie-market",
        capability="edit",
        enabled=True,
        credit_cost=8,
        requires_image=True,
        provider_model="google/nano-banana-edit",
        params_schema={
            "image_size": ParamSpec("string", default="1:1", options=("1:1", "16:9", "9:16", "4:3", "3:4")),
            "output_format": ParamSpec("string", default="png", options=("png", "jpg")),
        },
    ),
    # Video
    ModelDefinition(
        id="veo3_video",
        title="Veo 3.1 (Video)",
        provider="kie-veo",
        capability="video",
        enabled=True,
        credit_cost=25,
        provider_model="veo3",
        params_schema={
            "aspectRatio": ParamSpec("string", default="16:9", options=("16:9", "9:16", "1:1")),
        },
    ),
    # Disabled placeholder
    ModelDefinition(
        id="midjourney_image",
        title="Midjourney (Image)",
        provider="kie-market",
        capability="image",
        enabled=False,
        credit_cost=10,
        provider_model="midjourney/v6",
    ),
]


def _param_from_dict(name: str, raw: Dict[str, Any]) -> ParamSpec:
    if not isinstance(raw, dict) or raw.get("type") not in ("number", "integer", "string", "boolean"):
        raise ConfigurationError(f"Invalid paramsSchema entry: {name}")
    options = raw.get("options")
    return ParamSpec(
        type=raw["type"],
        default=raw.get("default"),
        min=raw.get("min"),
        max=raw.get("max"),
        options=tuple(options) if options is not None else None,
    )


def _model_from_dict(raw: Dict[str, Any]) -> ModelDefinition:
    try:
        model = ModelDefinition(
            id=str(raw["id"]),
            title=str(raw.get("title") or raw["id"]),
            provider=str(raw["provider"]),
            capability=str(raw["capability"]),
            enabled=bool(raw.get("enabled", True)),
            credit_cost=int(raw["creditCost"]),
            params_schema={k: _param_from_dict(k, v) for k, v in (raw.get("paramsSchema") or {}).items()},
            requires_image=bool(raw.get("requiresImage", raw.get("capability") == "edit")),
            provider_model=raw.get("providerModel"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid model catalog entry {raw!r}: {e}")
    if model.provider not in PROVIDERS:
        raise ConfigurationError(f"Unknown provider '{model.provider}' for model {model.id}")
    if model.capability not in CAPABILITIES:
        raise ConfigurationError(f"Unknown capability '{model.capability}' for model {model.id}")
    if model.credit_cost < 0:
        raise ConfigurationError(f"Negative creditCost for model {model.id}")
    return model


class ModelCatalog:
    """Static lookup from model id to its definition. No state beyond the table."""

    def __init__(self, models: Optional[List[ModelDefinition]] = None):
        self._models: Dict[str, ModelDefinition] = {m.id: m for m in (models or DEFAULT_MODELS)}

    @classmethod
    def from_file(cls, path: str) -> "ModelCatalog":
        """
        Load a JSON-with-comments catalog:  {"models": [{id, title, provider, capability, creditCost, ...}]}
        Fails fast if the file or the "models" list is missing.
        """
        cfg_path = Path(path)
        if not cfg_path.exists():
            raise ConfigurationError(f"Model catalog file not found at '{cfg_path}'.")
        with cfg_path.open("r", encoding="utf-8") as f:
            data = commentjson.load(f)
        if not isinstance(data, dict) or not isinstance(data.get("models"), list):
            raise ConfigurationError("Model catalog missing or invalid key: models")
        return cls([_model_from_dict(m) for m in data["models"]])

    @classmethod
    def from_settings(cls, settings) -> "ModelCatalog":
        if settings.model_catalog_path:
            return cls.from_file(settings.model_catalog_path)
        return cls()

    def get(self, model_id: str) -> Optional[ModelDefinition]:
        return self._models.get(model_id)

    def get_enabled(self, model_id: str) -> Optional[ModelDefinition]:
        model = self._models.get(model_id)
        return model if model is not None and model.enabled else None

    def enabled_models(self) -> List[ModelDefinition]:
        return [m for m in self._models.values() if m.enabled]

    def by_capability(self, capability: str) -> List[ModelDefinition]:
        return [m for m in self.enabled_models() if m.capability == capability]


#! PARAMS VALIDATION

def validate_params(model: ModelDefinition, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate caller params against the model's schema and fill defaults.
    Unknown keys, wrong types, out-of-range numbers and unlisted options are rejected.
    """
    params = dict(params or {})
    unknown = sorted(set(params) - set(model.params_schema))
    if unknown:
        raise ValidationError(f"Unknown params for {model.id}: {', '.join(unknown)}")

    resolved: Dict[str, Any] = {}
    for name, spec in model.params_schema.items():
        value = params.get(name, spec.default)
        if value is None:
            continue
        resolved[name] = _coerce_param(model.id, name, spec, value)
    return resolved


def _coerce_param(model_id: str, name: str, spec: ParamSpec, value: Any) -> Any:
    where = f"{model_id}.{name}"
    if spec.type in ("number", "integer"):
        if isinstance(value, bool):
            raise ValidationError(f"{where} must be a {spec.type}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{where} must be a {spec.type}")
        if spec.type == "integer":
            if not number.is_integer():
                raise ValidationError(f"{where} must be an integer")
            number = int(number)
        if spec.min is not None and number < spec.min:
            raise ValidationError(f"{where} must be >= {spec.min}")
        if spec.max is not None and number > spec.max:
            raise ValidationError(f"{where} must be <= {spec.max}")
        return number
    if spec.type == "boolean":
        if not isinstance(value, bool):
            raise ValidationError(f"{where} must be a boolean")
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{where} must be a string")
    if spec.options is not None and value not in spec.options:
        raise ValidationError(f"{where} must be one of: {', '.join(spec.options)}")
    return value
