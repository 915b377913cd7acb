"""ropeattn model components."""

from .attention import (
    CausalSelfAttention,
    eager_attention_forward,
    make_causal_mask,
    repeat_kv,
)
from .frequencies import (
    ROPE_INIT_FUNCTIONS,
    FrequencyBasis,
    compute_default_rope_parameters,
    compute_dynamic_ntk_parameters,
    compute_linear_scaling_rope_parameters,
    compute_rope_parameters,
    compute_yarn_parameters,
    recompute_if_needed,
)
from .normalization import (
    QKNormModule,
    RMSNorm,
    create_qk_norm,
)
from .rope import RotaryEmbedding, apply_rotary_pos_emb, compute_cos_sin, rotate_half

__all__ = [
    "CausalSelfAttention",
    "eager_attention_forward",
    "make_causal_mask",
    "repeat_kv",
    "ROPE_INIT_FUNCTIONS",
    "FrequencyBasis",
    "compute_rope_parameters",
    "compute_default_rope_parameters",
    "compute_linear_scaling_rope_parameters",
    "compute_dynamic_ntk_parameters",
    "compute_yarn_parameters",
    "recompute_if_needed",
    "RotaryEmbedding",
    "apply_rotary_pos_emb",
    "compute_cos_sin",
    "rotate_half",
    "RMSNorm",
    "QKNormModule",
    "create_qk_norm",
]
