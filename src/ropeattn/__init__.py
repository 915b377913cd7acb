"""ropeattn: rotary position embeddings and grouped-query causal attention."""

from .config import AttentionConfig, RopeParameters, RopeType, validate_rope_parameters
from .exceptions import (
    InvalidFactorError,
    InvalidParameterError,
    MissingParameterError,
    RopeError,
    ShapeMismatchError,
    UnsupportedRopeTypeError,
)
from .model import (
    CausalSelfAttention,
    FrequencyBasis,
    RotaryEmbedding,
    apply_rotary_pos_emb,
    compute_cos_sin,
    compute_rope_parameters,
    eager_attention_forward,
    make_causal_mask,
    recompute_if_needed,
    repeat_kv,
    rotate_half,
)
from .version import __version__

__all__ = [
    "AttentionConfig",
    "RopeParameters",
    "RopeType",
    "validate_rope_parameters",
    "RopeError",
    "MissingParameterError",
    "InvalidFactorError",
    "InvalidParameterError",
    "UnsupportedRopeTypeError",
    "ShapeMismatchError",
    "CausalSelfAttention",
    "FrequencyBasis",
    "RotaryEmbedding",
    "apply_rotary_pos_emb",
    "compute_cos_sin",
    "compute_rope_parameters",
    "eager_attention_forward",
    "make_causal_mask",
    "recompute_if_needed",
    "repeat_kv",
    "rotate_half",
    "__version__",
]
