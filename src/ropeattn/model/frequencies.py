"""
Inverse-frequency computation for rotary position embeddings.

Each supported rope type has one function with the signature
``fn(config, device=None, seq_len=None) -> (inv_freq, attention_scaling)``,
collected in ``ROPE_INIT_FUNCTIONS``. All variants work on the rotary
dimension ``int(head_dim * partial_rotary_factor)`` and produce a float32
vector of ``rotary_dim // 2`` frequencies.
"""

from __future__ import annotations

import math
import warnings
from collections.abc import Callable
from dataclasses import dataclass, replace

import torch
from torch import Tensor

from ..config import DEFAULT_BETA_FAST, DEFAULT_BETA_SLOW, AttentionConfig, RopeType
from ..exceptions import (
    InvalidParameterError,
    MissingParameterError,
    UnsupportedRopeTypeError,
)


def _base_inv_freq(base: float, dim: int, device: torch.device | str | None = None) -> Tensor:
    """Compute ``1 / base^(i / dim)`` for ``i = 0, 2, ..., dim - 2``."""
    exponents = torch.arange(0, dim, 2, dtype=torch.int64, device=device).float() / dim
    return 1.0 / (base**exponents)


def _require_factor(config: AttentionConfig) -> float:
    factor = config.rope_parameters.factor
    if factor is None:
        raise MissingParameterError("factor")
    return factor


def compute_default_rope_parameters(
    config: AttentionConfig,
    device: torch.device | str | None = None,
    seq_len: int | None = None,
) -> tuple[Tensor, float]:
    """
    Original RoPE frequencies.

    Args:
        config: Attention config providing ``rope_theta`` and the rotary dimension
        device: Device for the returned tensor
        seq_len: Unused by this rope type

    Returns:
        Tuple of (inv_freq, attention_scaling) with attention_scaling = 1.0
    """
    inv_freq = _base_inv_freq(config.rope_parameters.rope_theta, config.rotary_dim, device)
    return inv_freq, 1.0


def compute_linear_scaling_rope_parameters(
    config: AttentionConfig,
    device: torch.device | str | None = None,
    seq_len: int | None = None,
) -> tuple[Tensor, float]:
    """
    Default frequencies divided by ``factor``.

    Dividing the frequencies is equivalent to dividing the position ids,
    since the angles are ``inv_freq * position``.
    """
    factor = _require_factor(config)
    inv_freq, attention_scaling = compute_default_rope_parameters(config, device, seq_len)
    return inv_freq / factor, attention_scaling


def compute_dynamic_ntk_parameters(
    config: AttentionConfig,
    device: torch.device | str | None = None,
    seq_len: int | None = None,
) -> tuple[Tensor, float]:
    """
    NTK-aware frequencies with a base that grows with the sequence length.

    Sequences no longer than ``max_position_embeddings`` get the default
    frequencies. Longer ones raise the base by
    ``((factor * seq_len / max_pos) - (factor - 1)) ** (dim / (dim - 2))``.
    """
    factor = _require_factor(config)
    dim = config.rotary_dim
    if dim <= 2:
        raise InvalidParameterError(
            f"dynamic RoPE requires a rotary dimension > 2, got {dim}"
        )

    max_position_embeddings = config.max_position_embeddings
    seq_len = max_position_embeddings if seq_len is None else seq_len
    seq_len = max(seq_len, max_position_embeddings)

    scale = (factor * seq_len / max_position_embeddings) - (factor - 1)
    base = config.rope_parameters.rope_theta * scale ** (dim / (dim - 2))
    return _base_inv_freq(base, dim, device), 1.0


def get_mscale(scale: float, mscale: float = 1.0) -> float:
    """YaRN attention temperature: ``0.1 * mscale * ln(scale) + 1`` above scale 1."""
    if scale <= 1:
        return 1.0
    return 0.1 * mscale * math.log(scale) + 1.0


def find_correction_dim(
    num_rotations: float, dim: int, base: float, max_position_embeddings: int
) -> float:
    """Dimension index whose wavelength completes ``num_rotations`` over the context."""
    return (dim * math.log(max_position_embeddings / (num_rotations * 2 * math.pi))) / (
        2 * math.log(base)
    )


def find_correction_range(
    low_rot: float,
    high_rot: float,
    dim: int,
    base: float,
    max_position_embeddings: int,
    truncate: bool = True,
) -> tuple[float, float]:
    """Bounds of the YaRN ramp, clamped to the ``[0, dim / 2 - 1]`` frequency range."""
    low = find_correction_dim(low_rot, dim, base, max_position_embeddings)
    high = find_correction_dim(high_rot, dim, base, max_position_embeddings)
    if truncate:
        low = math.floor(low)
        high = math.ceil(high)
    upper = dim // 2 - 1
    return min(max(low, 0), upper), min(max(high, 0), upper)


def linear_ramp_factor(
    low: float, high: float, dim: int, device: torch.device | str | None = None
) -> Tensor:
    """Clamp ``(i - low) / (high - low)`` to [0, 1] for ``i`` in ``range(dim)``."""
    if low == high:
        high += 0.001  # avoids a singular ramp

    linear = (torch.arange(dim, dtype=torch.float32, device=device) - low) / (high - low)
    return torch.clamp(linear, 0, 1)


def compute_yarn_parameters(
    config: AttentionConfig,
    device: torch.device | str | None = None,
    seq_len: int | None = None,
) -> tuple[Tensor, float]:
    """
    YaRN frequencies (https://arxiv.org/abs/2309.00071).

    Blends extrapolated (unscaled) and interpolated (divided by the scaling
    factor) frequencies with a linear ramp over the frequency index, and
    derives the attention scaling factor applied to cos/sin.

    When ``original_max_position_embeddings`` is set, the effective factor is
    ``max_position_embeddings / original_max_position_embeddings`` instead of
    ``factor``.
    """
    params = config.rope_parameters
    base = params.rope_theta
    dim = config.rotary_dim
    factor = _require_factor(config)

    if base <= 1:
        raise InvalidParameterError(f"yarn RoPE requires rope_theta > 1, got {base}")

    original_max_position_embeddings = params.original_max_position_embeddings
    if original_max_position_embeddings is not None:
        implicit_factor = config.max_position_embeddings / original_max_position_embeddings
        if not math.isclose(factor, implicit_factor):
            warnings.warn(
                f"RoPE factor ({factor}) does not match max_position_embeddings / "
                f"original_max_position_embeddings ({implicit_factor}); using the latter.",
                UserWarning,
                stacklevel=2,
            )
        factor = implicit_factor
    else:
        original_max_position_embeddings = config.max_position_embeddings

    attention_factor = params.attention_factor
    if attention_factor is None:
        if params.mscale is not None and params.mscale_all_dim is not None:
            attention_factor = get_mscale(factor, params.mscale) / get_mscale(
                factor, params.mscale_all_dim
            )
        elif params.mscale is not None:
            attention_factor = get_mscale(factor, params.mscale)
        else:
            attention_factor = get_mscale(factor)

    beta_fast = params.beta_fast if params.beta_fast is not None else DEFAULT_BETA_FAST
    beta_slow = params.beta_slow if params.beta_slow is not None else DEFAULT_BETA_SLOW
    truncate = params.truncate if params.truncate is not None else True

    # "interpolation" means the scaling factor is applied
    pos_freqs = base ** (torch.arange(0, dim, 2, dtype=torch.int64, device=device).float() / dim)
    inv_freq_extrapolation = 1.0 / pos_freqs
    inv_freq_interpolation = 1.0 / (factor * pos_freqs)

    low, high = find_correction_range(
        beta_fast, beta_slow, dim, base, original_max_position_embeddings, truncate
    )
    inv_freq_extrapolation_factor = 1 - linear_ramp_factor(low, high, dim // 2, device)
    inv_freq = (
        inv_freq_interpolation * (1 - inv_freq_extrapolation_factor)
        + inv_freq_extrapolation * inv_freq_extrapolation_factor
    )
    return inv_freq, float(attention_factor)


ROPE_INIT_FUNCTIONS: dict[RopeType, Callable[..., tuple[Tensor, float]]] = {
    RopeType.DEFAULT: compute_default_rope_parameters,
    RopeType.LINEAR: compute_linear_scaling_rope_parameters,
    RopeType.DYNAMIC: compute_dynamic_ntk_parameters,
    RopeType.YARN: compute_yarn_parameters,
}


def compute_rope_parameters(
    config: AttentionConfig,
    rope_type: RopeType | str | None = None,
    seq_len: int | None = None,
    device: torch.device | str | None = None,
) -> tuple[Tensor, float]:
    """
    Compute (inv_freq, attention_scaling) for a rope type.

    Args:
        config: Attention config with validated rope parameters
        rope_type: Rope type to use (default: ``config.rope_parameters.rope_type``)
        seq_len: Current sequence length, only used by the dynamic type
        device: Device for the returned tensor

    Raises:
        UnsupportedRopeTypeError: For ``longrope`` and ``llama3``
    """
    if rope_type is None:
        rope_type = config.rope_parameters.rope_type
    else:
        rope_type = RopeType.parse(rope_type)

    init_fn = ROPE_INIT_FUNCTIONS.get(rope_type)
    if init_fn is None:
        raise UnsupportedRopeTypeError(rope_type)
    return init_fn(config, device=device, seq_len=seq_len)


@dataclass(frozen=True, eq=False)
class FrequencyBasis:
    """
    Inverse frequencies and attention scaling computed for one config.

    A basis is never mutated. Dynamic rope types get a new basis from
    ``recompute_if_needed`` when the sequence length changes.

    Attributes:
        inv_freq: Float32 tensor of shape (rotary_dim // 2,)
        attention_scaling: Multiplier applied to cos and sin
        rope_type: Rope type the basis was computed with
        max_seq_len: Sequence length the basis was computed for
    """

    inv_freq: Tensor
    attention_scaling: float
    rope_type: RopeType
    max_seq_len: int

    @classmethod
    def from_config(
        cls,
        config: AttentionConfig,
        seq_len: int | None = None,
        device: torch.device | str | None = None,
    ) -> FrequencyBasis:
        inv_freq, attention_scaling = compute_rope_parameters(
            config, seq_len=seq_len, device=device
        )
        max_seq_len = config.max_position_embeddings
        if seq_len is not None:
            max_seq_len = max(seq_len, max_seq_len)
        return cls(
            inv_freq=inv_freq,
            attention_scaling=attention_scaling,
            rope_type=config.rope_parameters.rope_type,
            max_seq_len=max_seq_len,
        )

    @property
    def rotary_dim(self) -> int:
        return self.inv_freq.shape[-1] * 2

    def to(self, device: torch.device | str) -> FrequencyBasis:
        inv_freq = self.inv_freq.to(device)
        if inv_freq is self.inv_freq:
            return self
        return replace(self, inv_freq=inv_freq)


def recompute_if_needed(
    basis: FrequencyBasis,
    config: AttentionConfig,
    seq_len: int,
    original: FrequencyBasis | None = None,
) -> FrequencyBasis:
    """
    Return the basis to use for a sequence of ``seq_len`` positions.

    Only dynamic bases ever change. A dynamic basis is recomputed when
    ``seq_len`` exceeds the length it was built for, and reset to the
    original basis when a short sequence follows a long one. In every other
    case the input basis is returned as is, so callers can detect a change
    with an identity check.

    Args:
        basis: Basis currently in use
        config: Config the basis was computed from
        seq_len: Number of positions in the upcoming forward call
        original: Basis for ``max_position_embeddings``, reused on reset if given
    """
    if basis.rope_type != RopeType.DYNAMIC:
        return basis

    device = basis.inv_freq.device
    original_max_seq_len = config.max_position_embeddings

    if seq_len > basis.max_seq_len:
        return FrequencyBasis.from_config(config, seq_len=seq_len, device=device)

    if seq_len < original_max_seq_len and basis.max_seq_len > original_max_seq_len:
        if original is not None:
            return original.to(device)
        return FrequencyBasis.from_config(config, device=device)

    return basis
