"""Pytest fixtures for ropeattn tests."""

import pytest
import torch

from ropeattn import AttentionConfig, RopeParameters


@pytest.fixture
def small_config() -> AttentionConfig:
    return AttentionConfig(
        hidden_size=64,
        num_attention_heads=4,
        num_key_value_heads=4,
        max_position_embeddings=128,
    )


@pytest.fixture
def gqa_config() -> AttentionConfig:
    """Four query heads sharing two kv heads."""
    return AttentionConfig(
        hidden_size=64,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=128,
    )


@pytest.fixture
def yarn_config() -> AttentionConfig:
    return AttentionConfig(
        hidden_size=256,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=2048,
        rope_parameters=RopeParameters.yarn(factor=4.0),
    )


@pytest.fixture
def hidden_states() -> torch.Tensor:
    torch.manual_seed(0)
    batch_size, seq_len, hidden_size = 2, 12, 64
    return torch.randn(batch_size, seq_len, hidden_size)
