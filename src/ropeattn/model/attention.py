"""
Grouped-query causal self-attention with rotary embeddings.

This module provides:
1. repeat_kv: expands key/value heads to the number of query heads
2. make_causal_mask: additive causal (and padding) mask construction
3. eager_attention_forward: scaled, masked, float32-softmax attention
4. CausalSelfAttention: projections + RoPE + attention as an nn.Module
"""

from __future__ import annotations

import torch
import torch.nn as nn
import torch.nn.functional as F
from einops import rearrange, repeat
from torch import Tensor

from ..config import AttentionConfig
from ..exceptions import ShapeMismatchError
from .normalization import create_qk_norm
from .rope import RotaryEmbedding, apply_rotary_pos_emb


def repeat_kv(hidden_states: Tensor, n_rep: int) -> Tensor:
    """
    Repeat key/value heads for grouped-query attention.

    Each kv head is followed by its copies, so the result is ordered
    ``[kv0, kv0, ..., kv1, kv1, ...]`` and query head ``i`` lines up with
    kv head ``i // n_rep``.

    Args:
        hidden_states: Tensor of shape (batch, kv_heads, seq_len, head_dim)
        n_rep: Number of copies per kv head

    Returns:
        Tensor of shape (batch, kv_heads * n_rep, seq_len, head_dim). The input
        itself is returned when n_rep == 1.
    """
    if hidden_states.dim() != 4:
        raise ShapeMismatchError(
            f"expected (batch, kv_heads, seq_len, head_dim), got {tuple(hidden_states.shape)}"
        )
    if n_rep < 1:
        raise ShapeMismatchError(f"n_rep must be >= 1, got {n_rep}")
    if n_rep == 1:
        return hidden_states
    return repeat(hidden_states, "b h s d -> b (h r) s d", r=n_rep)


def make_causal_mask(
    q_len: int,
    k_len: int | None = None,
    dtype: torch.dtype = torch.float32,
    device: torch.device | str | None = None,
    padding_mask: Tensor | None = None,
) -> Tensor:
    """
    Create an additive causal mask.

    Query ``i`` is taken to sit at absolute position ``k_len - q_len + i`` and
    may attend to keys at or before that position.

    Args:
        q_len: Number of query positions
        k_len: Number of key positions (default: q_len)
        dtype: Dtype of the mask
        device: Device of the mask
        padding_mask: Optional 0/1 mask of shape (batch, k_len), 0 for padding

    Returns:
        Mask of shape (1 or batch, 1, q_len, k_len) with 0 where attention is
        allowed and the dtype's minimum value where it is blocked
    """
    k_len = q_len if k_len is None else k_len
    if k_len < q_len:
        raise ShapeMismatchError(f"k_len ({k_len}) must be >= q_len ({q_len})")

    min_value = torch.finfo(dtype).min
    blocked = torch.ones(q_len, k_len, dtype=torch.bool, device=device).triu(
        diagonal=k_len - q_len + 1
    )
    mask = torch.zeros(q_len, k_len, dtype=dtype, device=device)
    mask = mask.masked_fill(blocked, min_value)[None, None]

    if padding_mask is not None:
        if padding_mask.dim() != 2 or padding_mask.shape[-1] != k_len:
            raise ShapeMismatchError(
                f"padding_mask must have shape (batch, {k_len}), got {tuple(padding_mask.shape)}"
            )
        padded = ~padding_mask.to(device=mask.device).bool()
        mask = torch.where(padded[:, None, None, :], min_value, mask)

    return mask


def _slice_mask(attention_mask: Tensor, scores_shape: tuple[int, ...]) -> Tensor:
    """Slice an additive mask to the key length and check it broadcasts to the scores."""
    scores_shape = torch.Size(scores_shape)
    key_len = scores_shape[-1]
    if attention_mask.dim() == 2:
        attention_mask = attention_mask[:, None, None, :]
    if attention_mask.dim() != 4:
        raise ShapeMismatchError(
            f"attention mask must be 2D or 4D, got shape {tuple(attention_mask.shape)}"
        )
    if attention_mask.shape[-1] < key_len:
        raise ShapeMismatchError(
            f"attention mask covers {attention_mask.shape[-1]} keys, need {key_len}"
        )

    mask = attention_mask[..., :key_len]
    try:
        broadcast = torch.broadcast_shapes(mask.shape, scores_shape)
    except RuntimeError as e:
        raise ShapeMismatchError(
            f"attention mask {tuple(mask.shape)} does not broadcast to scores "
            f"{tuple(scores_shape)}"
        ) from e
    if broadcast != scores_shape:
        raise ShapeMismatchError(
            f"attention mask {tuple(mask.shape)} does not broadcast to scores "
            f"{tuple(scores_shape)}"
        )
    return mask


def eager_attention_forward(
    query: Tensor,
    key: Tensor,
    value: Tensor,
    attention_mask: Tensor | None,
    scaling: float,
    num_key_value_groups: int,
    dropout: float = 0.0,
    training: bool = False,
) -> tuple[Tensor, Tensor]:
    """
    Scaled dot-product attention with grouped kv heads.

    Args:
        query: Query tensor of shape (batch, heads, q_len, head_dim)
        key: Key tensor of shape (batch, kv_heads, k_len, head_dim)
        value: Value tensor of shape (batch, kv_heads, k_len, head_dim)
        attention_mask: Optional additive mask broadcastable to
            (batch, heads, q_len, k_len) after slicing to k_len
        scaling: Multiplier for the raw scores, typically head_dim ** -0.5
        num_key_value_groups: Query heads per kv head
        dropout: Dropout probability on the attention weights
        training: Whether dropout is active

    Returns:
        Tuple of (output, attn_weights) with shapes (batch, heads, q_len, head_dim)
        and (batch, heads, q_len, k_len)
    """
    for name, x in (("query", query), ("key", key), ("value", value)):
        if x.dim() != 4:
            raise ShapeMismatchError(
                f"{name} must have shape (batch, heads, seq_len, head_dim), "
                f"got {tuple(x.shape)}"
            )
    if key.shape != value.shape:
        raise ShapeMismatchError(
            f"key and value shapes differ: {tuple(key.shape)} vs {tuple(value.shape)}"
        )
    if query.shape[-1] != key.shape[-1]:
        raise ShapeMismatchError(
            f"query head_dim {query.shape[-1]} != key head_dim {key.shape[-1]}"
        )
    if query.shape[1] != key.shape[1] * num_key_value_groups:
        raise ShapeMismatchError(
            f"{query.shape[1]} query heads cannot be grouped over {key.shape[1]} kv heads "
            f"with {num_key_value_groups} groups"
        )

    key_states = repeat_kv(key, num_key_value_groups)
    value_states = repeat_kv(value, num_key_value_groups)

    attn_weights = torch.matmul(query, key_states.transpose(-2, -1)) * scaling
    if attention_mask is not None:
        attn_weights = attn_weights + _slice_mask(attention_mask, attn_weights.shape)

    # Softmax in float32 for stability, then back to the working dtype
    attn_weights = F.softmax(attn_weights, dim=-1, dtype=torch.float32)
    # Fully masked rows (all -inf) produce NaN
    attn_weights = torch.nan_to_num(attn_weights, nan=0.0).to(query.dtype)
    attn_weights = F.dropout(attn_weights, p=dropout, training=training)

    attn_output = torch.matmul(attn_weights, value_states)
    return attn_output, attn_weights


class CausalSelfAttention(nn.Module):
    """
    Causal multi-head self-attention with RoPE and grouped kv heads.

    Uses F.scaled_dot_product_attention when ``attn_implementation="sdpa"`` and
    weights are not requested; otherwise the eager path, which always returns
    the attention weights.

    Args:
        config: Attention configuration
        rotary_emb: Optional RotaryEmbedding shared between layers. A new one
            is created from ``config`` when omitted.
    """

    def __init__(
        self,
        config: AttentionConfig,
        rotary_emb: RotaryEmbedding | None = None,
    ) -> None:
        super().__init__()
        self.config = config

        self.hidden_size = config.hidden_size
        self.n_heads = config.num_attention_heads
        self.n_kv_heads = config.num_key_value_heads
        self.head_dim = config.head_dim
        self.num_key_value_groups = config.num_key_value_groups
        self.scaling = config.scaling
        self.dropout_p = config.attention_dropout

        bias = config.attention_bias
        self.q_proj = nn.Linear(self.hidden_size, self.n_heads * self.head_dim, bias=bias)
        self.k_proj = nn.Linear(self.hidden_size, self.n_kv_heads * self.head_dim, bias=bias)
        self.v_proj = nn.Linear(self.hidden_size, self.n_kv_heads * self.head_dim, bias=bias)
        self.o_proj = nn.Linear(self.n_heads * self.head_dim, self.hidden_size, bias=bias)

        self.rotary_emb = rotary_emb if rotary_emb is not None else RotaryEmbedding(config)

        self.qk_norm_module = create_qk_norm(config.qk_norm, self.head_dim, config.norm_eps)

    def _apply_qk_norm(self, q: Tensor, k: Tensor) -> tuple[Tensor, Tensor]:
        """Apply QK normalization if configured."""
        if self.qk_norm_module is not None:
            return self.qk_norm_module(q, k)
        return q, k

    def _prepare_attention_mask(
        self, attention_mask: Tensor | None, batch_size: int, seq_len: int, x: Tensor
    ) -> Tensor:
        """
        Turn the caller's mask into an additive 4D mask.

        None gives a pure causal mask, a (batch, seq_len) 0/1 padding mask is
        combined with the causal mask, and a 4D mask is used as is (boolean
        masks mark allowed positions with True).
        """
        if attention_mask is None:
            return make_causal_mask(seq_len, dtype=x.dtype, device=x.device)

        if attention_mask.dim() == 2:
            if attention_mask.shape[0] != batch_size:
                raise ShapeMismatchError(
                    f"padding mask batch {attention_mask.shape[0]} != input batch {batch_size}"
                )
            return make_causal_mask(
                seq_len, dtype=x.dtype, device=x.device, padding_mask=attention_mask
            )

        if attention_mask.dim() == 4:
            if attention_mask.dtype == torch.bool:
                additive = torch.zeros(attention_mask.shape, dtype=x.dtype, device=x.device)
                return additive.masked_fill(~attention_mask, torch.finfo(x.dtype).min)
            return attention_mask.to(x.dtype)

        raise ShapeMismatchError(
            f"attention_mask must be 2D or 4D, got shape {tuple(attention_mask.shape)}"
        )

    def forward(
        self,
        hidden_states: Tensor,
        position_ids: Tensor | None = None,
        attention_mask: Tensor | None = None,
        position_embeddings: tuple[Tensor, Tensor] | None = None,
        need_weights: bool = False,
    ) -> tuple[Tensor, Tensor | None]:
        """
        Forward pass with causal self-attention.

        Args:
            hidden_states: Input tensor of shape (batch, seq_len, hidden_size)
            position_ids: Optional position indices of shape (batch, seq_len),
                defaults to 0..seq_len-1 for every row
            attention_mask: Optional padding mask (batch, seq_len) or additive
                mask (batch, 1, seq_len, seq_len)
            position_embeddings: Optional precomputed (cos, sin) pair
            need_weights: If True, return attention weights (forces eager path)

        Returns:
            Tuple of (output, attn_weights). output has shape
            (batch, seq_len, hidden_size); attn_weights has shape
            (batch, n_heads, seq_len, seq_len) or is None when not requested.
        """
        batch_size, seq_len, _ = hidden_states.shape

        # Project to Q, K, V
        q = rearrange(self.q_proj(hidden_states), "b s (h d) -> b h s d", h=self.n_heads)
        k = rearrange(self.k_proj(hidden_states), "b s (h d) -> b h s d", h=self.n_kv_heads)
        v = rearrange(self.v_proj(hidden_states), "b s (h d) -> b h s d", h=self.n_kv_heads)

        # Apply RoPE
        if position_embeddings is None:
            if position_ids is None:
                position_ids = torch.arange(seq_len, device=hidden_states.device)
                position_ids = position_ids.unsqueeze(0).expand(batch_size, -1)
            position_embeddings = self.rotary_emb(hidden_states, position_ids)
        cos, sin = position_embeddings
        q, k = apply_rotary_pos_emb(q, k, cos, sin)

        # Apply QK normalization
        q, k = self._apply_qk_norm(q, k)

        attn_mask = self._prepare_attention_mask(
            attention_mask, batch_size, seq_len, hidden_states
        )
        attn_mask = _slice_mask(attn_mask, (batch_size, self.n_heads, seq_len, seq_len))
        dropout = self.dropout_p if self.training else 0.0

        if self.config.attn_implementation == "sdpa" and not need_weights:
            output = F.scaled_dot_product_attention(
                q,
                repeat_kv(k, self.num_key_value_groups),
                repeat_kv(v, self.num_key_value_groups),
                attn_mask=attn_mask,
                dropout_p=dropout,
                scale=self.scaling,
            )
            attn_weights = None
        else:
            output, attn_weights = eager_attention_forward(
                q,
                k,
                v,
                attn_mask,
                scaling=self.scaling,
                num_key_value_groups=self.num_key_value_groups,
                dropout=dropout,
                training=self.training,
            )

        # Reshape and project
        output = rearrange(output, "b h s d -> b s (h d)")
        output = self.o_proj(output)

        if need_weights:
            return output, attn_weights
        return output, None
