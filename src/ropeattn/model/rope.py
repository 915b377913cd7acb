"""Rotary Position Embeddings (RoPE) implementation."""

from __future__ import annotations

import threading

import torch
import torch.nn as nn
from torch import Tensor

from ..config import AttentionConfig, RopeType
from ..exceptions import ShapeMismatchError
from .frequencies import FrequencyBasis, recompute_if_needed


def rotate_half(x: Tensor) -> Tensor:
    """Rotate half the hidden dims of the input: ``(x1, x2) -> (-x2, x1)``."""
    if x.shape[-1] % 2 != 0:
        raise ShapeMismatchError(
            f"rotate_half requires an even last dimension, got {x.shape[-1]}"
        )
    x1, x2 = x.chunk(2, dim=-1)
    return torch.cat((-x2, x1), dim=-1)


def _rotate(x: Tensor, cos: Tensor, sin: Tensor) -> Tensor:
    rotary_dim = cos.shape[-1]
    if rotary_dim == x.shape[-1]:
        return (x * cos) + (rotate_half(x) * sin)

    # Partial rotary: only the leading rotary_dim channels are rotated
    x_rot, x_pass = x[..., :rotary_dim], x[..., rotary_dim:]
    x_rot = (x_rot * cos) + (rotate_half(x_rot) * sin)
    return torch.cat((x_rot, x_pass), dim=-1)


def apply_rotary_pos_emb(
    q: Tensor,
    k: Tensor,
    cos: Tensor,
    sin: Tensor,
    unsqueeze_dim: int = 1,
) -> tuple[Tensor, Tensor]:
    """
    Apply rotary embeddings to query and key tensors.

    Args:
        q: Query tensor of shape (batch, heads, seq_len, head_dim)
        k: Key tensor of shape (batch, kv_heads, seq_len, head_dim)
        cos: Cosine tensor of shape (batch, seq_len, rotary_dim)
        sin: Sine tensor of shape (batch, seq_len, rotary_dim)
        unsqueeze_dim: Axis to insert into cos/sin so they broadcast over heads

    Returns:
        Tuple of rotated (query, key) tensors. When rotary_dim < head_dim the
        trailing head_dim - rotary_dim channels are passed through unchanged.
    """
    if cos.shape != sin.shape:
        raise ShapeMismatchError(
            f"cos and sin shapes differ: {tuple(cos.shape)} vs {tuple(sin.shape)}"
        )
    rotary_dim = cos.shape[-1]
    for name, x in (("query", q), ("key", k)):
        if rotary_dim > x.shape[-1]:
            raise ShapeMismatchError(
                f"rotary dimension {rotary_dim} exceeds {name} head_dim {x.shape[-1]}"
            )

    cos = cos.unsqueeze(unsqueeze_dim)
    sin = sin.unsqueeze(unsqueeze_dim)

    q_embed = _rotate(q, cos, sin)
    k_embed = _rotate(k, cos, sin)
    return q_embed, k_embed


def compute_cos_sin(
    basis: FrequencyBasis,
    position_ids: Tensor,
    dtype: torch.dtype | None = None,
) -> tuple[Tensor, Tensor]:
    """
    Compute cos/sin encodings for a batch of positions.

    The angles are computed in float32 regardless of autocast or model
    precision and only cast to ``dtype`` at the end.

    Args:
        basis: Frequency basis to encode with
        position_ids: Position indices of shape (batch, seq_len)
        dtype: Output dtype (default: float32)

    Returns:
        Tuple of (cos, sin), each of shape (batch, seq_len, rotary_dim)
    """
    if position_ids.dim() != 2:
        raise ShapeMismatchError(
            f"position_ids must have shape (batch, seq_len), got {tuple(position_ids.shape)}"
        )

    device = position_ids.device
    device_type = device.type if device.type != "mps" else "cpu"
    inv_freq = basis.inv_freq.to(device=device, dtype=torch.float32)

    with torch.autocast(device_type=device_type, enabled=False):
        freqs = position_ids[..., None].float() * inv_freq  # (batch, seq_len, rotary_dim // 2)
        emb = torch.cat((freqs, freqs), dim=-1)
        cos = emb.cos() * basis.attention_scaling
        sin = emb.sin() * basis.attention_scaling

    if dtype is not None:
        cos, sin = cos.to(dtype), sin.to(dtype)
    return cos, sin


class RotaryEmbedding(nn.Module):
    """
    Rotary Position Embedding (RoPE) for transformer attention.

    Owns the frequency basis for one attention config and turns position ids
    into cos/sin encodings. Dynamic rope types swap in a recomputed basis
    whenever the positions seen in a forward call require it; the swap is a
    whole-object replacement done under a lock.

    Args:
        config: Attention config with validated rope parameters
        device: Device for the frequency buffer
    """

    def __init__(
        self,
        config: AttentionConfig,
        device: torch.device | str | None = None,
    ) -> None:
        super().__init__()
        self.config = config
        self.rope_type = config.rope_parameters.rope_type
        self.original_max_seq_len = config.max_position_embeddings

        basis = FrequencyBasis.from_config(config, device=device)
        self.original_basis = basis
        self.basis = basis
        self._lock = threading.Lock()

        self.register_buffer("inv_freq", basis.inv_freq, persistent=False)

    @property
    def attention_scaling(self) -> float:
        return self.basis.attention_scaling

    @property
    def max_seq_len_cached(self) -> int:
        return self.basis.max_seq_len

    def update_basis(self, seq_len: int) -> FrequencyBasis:
        """Recompute the basis for ``seq_len`` positions if the rope type requires it."""
        with self._lock:
            current = self.basis
            updated = recompute_if_needed(
                current, self.config, seq_len, original=self.original_basis
            )
            if updated is not current:
                updated = updated.to(self.inv_freq.device)
                self.basis = updated
                self.inv_freq = updated.inv_freq
            return updated

    def _apply(self, fn, *args, **kwargs):
        # Follow the module's device, but frequencies stay float32
        super()._apply(fn, *args, **kwargs)
        device = self.inv_freq.device
        with self._lock:
            original = self.original_basis.to(device)
            if self.basis is self.original_basis:
                self.basis = original
            else:
                self.basis = self.basis.to(device)
            self.original_basis = original
            self.inv_freq = self.basis.inv_freq
        return self

    @torch.no_grad()
    def forward(self, x: Tensor, position_ids: Tensor) -> tuple[Tensor, Tensor]:
        """
        Compute cos/sin encodings for the given positions.

        Args:
            x: Tensor whose dtype the encodings are cast to
            position_ids: Position indices of shape (batch, seq_len)

        Returns:
            Tuple of (cos, sin), each of shape (batch, seq_len, rotary_dim)
        """
        if self.rope_type == RopeType.DYNAMIC:
            seq_len = int(position_ids.max()) + 1
            basis = self.update_basis(seq_len)
        else:
            basis = self.basis
        return compute_cos_sin(basis, position_ids, dtype=x.dtype)

    def __getstate__(self) -> dict:
        state = self.__dict__.copy()
        state.pop("_lock", None)
        return state

    def __setstate__(self, state: dict) -> None:
        super().__setstate__(state)
        self._lock = threading.Lock()
