"""Normalization layers for query/key normalization."""

from __future__ import annotations

import torch
import torch.nn as nn
from torch import Tensor


class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization.

    Statistics are computed in float32 and the result is cast back to the
    input dtype.

    Reference: https://arxiv.org/abs/1910.07467

    Args:
        normalized_shape: Size of the last dimension to normalize
        eps: Epsilon for numerical stability
        elementwise_affine: If True, learn a per-channel scale
    """

    def __init__(
        self, normalized_shape: int, eps: float = 1e-6, elementwise_affine: bool = True
    ) -> None:
        super().__init__()
        self.eps = eps
        if elementwise_affine:
            self.weight = nn.Parameter(torch.ones(normalized_shape))
        else:
            self.register_parameter("weight", None)

    def forward(self, x: Tensor) -> Tensor:
        input_dtype = x.dtype
        x = x.float()
        x = x * torch.rsqrt(x.pow(2).mean(dim=-1, keepdim=True) + self.eps)
        if self.weight is not None:
            x = x * self.weight.float()
        return x.to(input_dtype)


class QKNormModule(nn.Module):
    """
    Applies RMS normalization over head_dim to Q and K tensors.

    Query and key get separate norms, each shared across heads.

    Args:
        head_dim: Dimension per head
        eps: Epsilon for numerical stability
    """

    def __init__(self, head_dim: int, eps: float = 1e-6) -> None:
        super().__init__()
        self.q_norm = RMSNorm(head_dim, eps=eps)
        self.k_norm = RMSNorm(head_dim, eps=eps)

    def forward(self, q: Tensor, k: Tensor) -> tuple[Tensor, Tensor]:
        return self.q_norm(q), self.k_norm(k)


def create_qk_norm(qk_norm_type: str, head_dim: int, eps: float = 1e-6) -> nn.Module | None:
    """
    Factory function to create QK normalization.

    Args:
        qk_norm_type: "none" or "rmsnorm"
        head_dim: Dimension per head
        eps: Epsilon for numerical stability

    Returns:
        QK normalization module or None if qk_norm_type is "none"

    Raises:
        ValueError: If qk_norm_type is not recognized
    """
    if qk_norm_type == "none":
        return None
    elif qk_norm_type == "rmsnorm":
        return QKNormModule(head_dim, eps)
    else:
        raise ValueError(f"Unknown qk_norm_type: {qk_norm_type}")
