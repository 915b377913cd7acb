"""Rotary embedding parameters and attention configuration."""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

from .exceptions import (
    InvalidFactorError,
    InvalidParameterError,
    MissingParameterError,
)
from .utils.config import dataclass_to_dict, load_config, merge_configs, save_yaml

DEFAULT_ROPE_THETA = 10000.0
DEFAULT_BETA_FAST = 32.0
DEFAULT_BETA_SLOW = 1.0


class RopeType(str, Enum):
    """RoPE frequency variants that can appear in a model config."""

    DEFAULT = "default"
    LINEAR = "linear"
    DYNAMIC = "dynamic"
    YARN = "yarn"
    LONGROPE = "longrope"
    LLAMA3 = "llama3"

    @classmethod
    def parse(cls, value: str | RopeType) -> RopeType:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise InvalidParameterError(
                f"unknown rope_type '{value}', must be one of: {valid}"
            ) from None


# Persisted key for every RopeParameters field. Upstream checkpoints use these
# names, so they must not change.
_FLOAT_KEYS = (
    "factor",
    "attention_factor",
    "beta_fast",
    "beta_slow",
    "low_freq_factor",
    "high_freq_factor",
    "mscale",
    "mscale_all_dim",
)
_LIST_KEYS = ("short_factor", "long_factor")


@dataclass(frozen=True)
class RopeParameters:
    """
    RoPE parameters for one model.

    Instances are validated on construction: a parameter set that violates
    the constraints of its ``rope_type`` cannot exist.

    Args:
        rope_theta: Base period of the rotary frequencies
        rope_type: Frequency variant
        factor: Context scaling factor (linear, dynamic, yarn, llama3)
        original_max_position_embeddings: Pretraining context length
        attention_factor: Explicit cos/sin scaling (yarn)
        beta_fast: Extrapolation boundary of the yarn ramp (default 32)
        beta_slow: Interpolation boundary of the yarn ramp (default 1)
        short_factor: Per-frequency short-context factors (longrope)
        long_factor: Per-frequency long-context factors (longrope)
        low_freq_factor: Low frequency factor (llama3)
        high_freq_factor: High frequency factor (llama3)
        mscale: Attention scaling multiplier (yarn)
        mscale_all_dim: Attention scaling divisor multiplier (yarn)
        truncate: Whether yarn correction bounds are floor/ceil truncated
    """

    rope_theta: float = DEFAULT_ROPE_THETA
    rope_type: RopeType = RopeType.DEFAULT
    factor: float | None = None
    original_max_position_embeddings: int | None = None
    attention_factor: float | None = None
    beta_fast: float | None = None
    beta_slow: float | None = None
    short_factor: tuple[float, ...] | None = None
    long_factor: tuple[float, ...] | None = None
    low_freq_factor: float | None = None
    high_freq_factor: float | None = None
    mscale: float | None = None
    mscale_all_dim: float | None = None
    truncate: bool | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rope_type", RopeType.parse(self.rope_type))
        for name in _LIST_KEYS:
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, tuple(float(v) for v in value))
        self.validate()

    # Convenience constructors

    @classmethod
    def default(cls, rope_theta: float = DEFAULT_ROPE_THETA) -> RopeParameters:
        return cls(rope_theta=rope_theta, rope_type=RopeType.DEFAULT)

    @classmethod
    def linear(cls, factor: float, rope_theta: float = DEFAULT_ROPE_THETA) -> RopeParameters:
        return cls(rope_theta=rope_theta, rope_type=RopeType.LINEAR, factor=factor)

    @classmethod
    def dynamic(cls, factor: float, rope_theta: float = DEFAULT_ROPE_THETA) -> RopeParameters:
        return cls(rope_theta=rope_theta, rope_type=RopeType.DYNAMIC, factor=factor)

    @classmethod
    def yarn(
        cls,
        factor: float,
        rope_theta: float = DEFAULT_ROPE_THETA,
        attention_factor: float | None = None,
        beta_fast: float | None = DEFAULT_BETA_FAST,
        beta_slow: float | None = DEFAULT_BETA_SLOW,
        original_max_position_embeddings: int | None = None,
    ) -> RopeParameters:
        return cls(
            rope_theta=rope_theta,
            rope_type=RopeType.YARN,
            factor=factor,
            original_max_position_embeddings=original_max_position_embeddings,
            attention_factor=attention_factor,
            beta_fast=beta_fast,
            beta_slow=beta_slow,
        )

    def validate(self) -> None:
        """Raise a typed ``RopeError`` if the parameters are invalid."""
        validate_rope_parameters(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RopeParameters:
        """
        Build parameters from a config dictionary using the persisted key names.

        The legacy key ``type`` is accepted in place of ``rope_type``.
        Unrecognised keys are ignored with a warning.
        """
        data = dict(data)
        if "rope_type" not in data and "type" in data:
            data["rope_type"] = data.pop("type")
        else:
            data.pop("type", None)

        if data.get("rope_theta") is None:
            raise MissingParameterError("rope_theta")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            warnings.warn(
                f"Ignoring unrecognized RoPE parameters: {unknown}",
                UserWarning,
                stacklevel=2,
            )

        kwargs: dict[str, Any] = {
            "rope_theta": float(data["rope_theta"]),
            "rope_type": data.get("rope_type", RopeType.DEFAULT),
        }
        for name in _FLOAT_KEYS:
            if data.get(name) is not None:
                kwargs[name] = float(data[name])
        for name in _LIST_KEYS:
            if data.get(name) is not None:
                kwargs[name] = data[name]
        if data.get("original_max_position_embeddings") is not None:
            kwargs["original_max_position_embeddings"] = int(
                data["original_max_position_embeddings"]
            )
        if data.get("truncate") is not None:
            kwargs["truncate"] = bool(data["truncate"])

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted key layout, omitting unset fields."""
        result = dataclass_to_dict(self)
        return {key: value for key, value in result.items() if value is not None}


def validate_rope_parameters(params: RopeParameters) -> None:
    """
    Check the constraints of ``params.rope_type``.

    Raises:
        MissingParameterError: A field required by the rope type is absent
        InvalidFactorError: ``factor`` is below 1.0
        InvalidParameterError: Any other range or relation is violated
    """
    if params.rope_theta is None:
        raise MissingParameterError("rope_theta")
    if params.rope_theta <= 0:
        raise InvalidParameterError(f"rope_theta must be > 0, got {params.rope_theta}")

    rope_type = params.rope_type
    if rope_type in (RopeType.LINEAR, RopeType.DYNAMIC, RopeType.YARN, RopeType.LLAMA3):
        _require_factor(params)

    if rope_type == RopeType.YARN:
        if params.attention_factor is not None and params.attention_factor <= 0:
            raise InvalidParameterError(
                f"attention_factor must be > 0, got {params.attention_factor}"
            )
        beta_fast = params.beta_fast if params.beta_fast is not None else DEFAULT_BETA_FAST
        beta_slow = params.beta_slow if params.beta_slow is not None else DEFAULT_BETA_SLOW
        if beta_fast < beta_slow:
            raise InvalidParameterError(
                f"beta_fast ({beta_fast}) must be >= beta_slow ({beta_slow})"
            )
        if (
            params.original_max_position_embeddings is not None
            and params.original_max_position_embeddings <= 0
        ):
            raise InvalidParameterError("original_max_position_embeddings must be > 0")

    elif rope_type == RopeType.LONGROPE:
        for name in _LIST_KEYS:
            value = getattr(params, name)
            if value is None:
                raise MissingParameterError(name)
            if len(value) == 0:
                raise InvalidParameterError(f"{name} cannot be empty")

    elif rope_type == RopeType.LLAMA3:
        for name in ("original_max_position_embeddings", "low_freq_factor", "high_freq_factor"):
            if getattr(params, name) is None:
                raise MissingParameterError(name)
        if params.high_freq_factor <= params.low_freq_factor:
            raise InvalidParameterError(
                f"high_freq_factor ({params.high_freq_factor}) must be > "
                f"low_freq_factor ({params.low_freq_factor})"
            )


def _require_factor(params: RopeParameters) -> None:
    if params.factor is None:
        raise MissingParameterError("factor")
    if params.factor < 1.0:
        raise InvalidFactorError(
            f"{params.rope_type.value} RoPE requires factor >= 1.0, got {params.factor}"
        )


@dataclass
class AttentionConfig:
    """Configuration for a causal self-attention layer with rotary embeddings."""

    hidden_size: int = 2048
    num_attention_heads: int = 16
    num_key_value_heads: int | None = None  # Defaults to num_attention_heads
    head_dim: int | None = None  # Defaults to hidden_size // num_attention_heads
    partial_rotary_factor: float = 1.0
    max_position_embeddings: int = 2048

    rope_parameters: RopeParameters = field(default_factory=RopeParameters.default)

    attention_bias: bool = False
    attention_dropout: float = 0.0

    qk_norm: str = "none"  # "none" or "rmsnorm"
    norm_eps: float = 1e-6
    attn_implementation: str = "eager"  # "eager" or "sdpa"

    def __post_init__(self) -> None:
        if isinstance(self.rope_parameters, dict):
            self.rope_parameters = RopeParameters.from_dict(self.rope_parameters)

        if self.num_attention_heads <= 0:
            raise ValueError(
                f"num_attention_heads must be positive, got {self.num_attention_heads}"
            )
        if self.num_key_value_heads is None:
            self.num_key_value_heads = self.num_attention_heads
        if self.num_key_value_heads <= 0:
            raise ValueError(
                f"num_key_value_heads must be positive, got {self.num_key_value_heads}"
            )
        if self.num_attention_heads % self.num_key_value_heads != 0:
            raise ValueError(
                f"num_attention_heads ({self.num_attention_heads}) must be divisible "
                f"by num_key_value_heads ({self.num_key_value_heads})"
            )

        if self.head_dim is None:
            if self.hidden_size % self.num_attention_heads != 0:
                raise ValueError(
                    f"hidden_size ({self.hidden_size}) must be divisible by "
                    f"num_attention_heads ({self.num_attention_heads})"
                )
            self.head_dim = self.hidden_size // self.num_attention_heads

        if not 0.0 < self.partial_rotary_factor <= 1.0:
            raise ValueError(
                f"partial_rotary_factor must be in (0, 1], got {self.partial_rotary_factor}"
            )
        rotary_dim = self.rotary_dim
        if rotary_dim <= 0 or rotary_dim % 2 != 0:
            raise ValueError(
                f"rotary dimension must be a positive even number, got {rotary_dim} "
                f"(head_dim={self.head_dim}, partial_rotary_factor={self.partial_rotary_factor})"
            )

        if self.max_position_embeddings <= 0:
            raise ValueError(
                f"max_position_embeddings must be positive, got {self.max_position_embeddings}"
            )

        valid_qk_norms = {"none", "rmsnorm"}
        if self.qk_norm not in valid_qk_norms:
            raise ValueError(
                f"qk_norm must be one of {valid_qk_norms}, got '{self.qk_norm}'"
            )

        valid_implementations = {"eager", "sdpa"}
        if self.attn_implementation not in valid_implementations:
            raise ValueError(
                f"attn_implementation must be one of {valid_implementations}, "
                f"got '{self.attn_implementation}'"
            )

        self.rope_parameters.validate()

    @property
    def rotary_dim(self) -> int:
        return int(self.head_dim * self.partial_rotary_factor)

    @property
    def num_key_value_groups(self) -> int:
        return self.num_attention_heads // self.num_key_value_heads

    @property
    def scaling(self) -> float:
        return self.head_dim**-0.5

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttentionConfig:
        """
        Build a config from a model config dictionary.

        Accepts either a nested ``rope_parameters`` mapping or the older layout
        with a top-level ``rope_theta`` and an optional ``rope_scaling`` mapping.
        Keys that do not belong to attention (vocab size, layer count, ...) are
        ignored.
        """
        data = dict(data)
        rope = data.pop("rope_parameters", None)
        rope_theta = data.pop("rope_theta", None)
        rope_scaling = data.pop("rope_scaling", None)

        if rope is None and (rope_theta is not None or rope_scaling is not None):
            warnings.warn(
                "Top-level 'rope_theta'/'rope_scaling' is deprecated, "
                "use a nested 'rope_parameters' mapping instead.",
                DeprecationWarning,
                stacklevel=2,
            )
            rope = dict(rope_scaling or {})
        if rope is not None:
            rope = dict(rope)
            if rope.get("rope_theta") is None:
                rope["rope_theta"] = rope_theta if rope_theta is not None else DEFAULT_ROPE_THETA

        known = {f.name for f in fields(cls)} - {"rope_parameters"}
        kwargs: dict[str, Any] = {k: v for k, v in data.items() if k in known}
        if rope is not None:
            kwargs["rope_parameters"] = RopeParameters.from_dict(rope)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = dataclass_to_dict(self)
        result["rope_parameters"] = self.rope_parameters.to_dict()
        return result

    @classmethod
    def from_file(
        cls, path: str | Path, overrides: dict[str, Any] | None = None
    ) -> AttentionConfig:
        """
        Load from a YAML or JSON (``config.json``) file.

        ``overrides`` is merged into the file contents before parsing; nested
        mappings such as ``rope_parameters`` are merged key by key.
        """
        data = load_config(path)
        if overrides:
            data = merge_configs(data, overrides)
        return cls.from_dict(data)

    def save_yaml(self, path: str | Path) -> None:
        save_yaml(self.to_dict(), path)
