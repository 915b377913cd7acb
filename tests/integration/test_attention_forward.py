"""End-to-end checks of the attention block against a NumPy reference."""

import numpy as np
import pytest
import torch

from ropeattn import AttentionConfig, CausalSelfAttention, RopeParameters, RotaryEmbedding


def np_rope(x: np.ndarray, positions: np.ndarray, inv_freq: np.ndarray, scaling: float) -> np.ndarray:
    """Rotate-half RoPE on (batch, heads, seq, head_dim) with pass-through channels."""
    rotary_dim = inv_freq.shape[0] * 2
    angles = positions[..., None].astype(np.float64) * inv_freq  # (batch, seq, rotary_dim/2)
    emb = np.concatenate([angles, angles], axis=-1)[:, None]
    cos, sin = np.cos(emb) * scaling, np.sin(emb) * scaling

    x_rot, x_pass = x[..., :rotary_dim], x[..., rotary_dim:]
    half = rotary_dim // 2
    rotated = np.concatenate([-x_rot[..., half:], x_rot[..., :half]], axis=-1)
    return np.concatenate([x_rot * cos + rotated * sin, x_pass], axis=-1)


def np_block(module: CausalSelfAttention, x: np.ndarray, positions: np.ndarray) -> np.ndarray:
    """Projections, RoPE, causal grouped attention and output projection in float64."""
    config = module.config
    weights = {name: p.detach().double().numpy() for name, p in module.state_dict().items()}
    batch, seq_len, _ = x.shape
    n_heads, n_kv, head_dim = config.num_attention_heads, config.num_key_value_heads, config.head_dim

    def project(name, heads):
        out = x @ weights[f"{name}.weight"].T
        return out.reshape(batch, seq_len, heads, head_dim).transpose(0, 2, 1, 3)

    q, k, v = project("q_proj", n_heads), project("k_proj", n_kv), project("v_proj", n_kv)

    basis = module.rotary_emb.basis
    inv_freq = basis.inv_freq.double().numpy()
    q = np_rope(q, positions, inv_freq, basis.attention_scaling)
    k = np_rope(k, positions, inv_freq, basis.attention_scaling)

    groups = n_heads // n_kv
    causal = np.triu(np.full((seq_len, seq_len), -np.inf), k=1)
    out = np.zeros_like(q)
    for h in range(n_heads):
        scores = q[:, h] @ k[:, h // groups].transpose(0, 2, 1) * config.scaling + causal
        scores = scores - scores.max(axis=-1, keepdims=True)
        probs = np.exp(scores)
        probs = probs / probs.sum(axis=-1, keepdims=True)
        out[:, h] = probs @ v[:, h // groups]

    out = out.transpose(0, 2, 1, 3).reshape(batch, seq_len, n_heads * head_dim)
    return out @ weights["o_proj.weight"].T


@pytest.mark.parametrize(
    "rope_parameters",
    [
        RopeParameters.default(),
        RopeParameters.linear(factor=2.0),
        RopeParameters.dynamic(factor=2.0),
        RopeParameters.yarn(factor=4.0),
    ],
    ids=["default", "linear", "dynamic", "yarn"],
)
@pytest.mark.parametrize("attn_implementation", ["eager", "sdpa"])
def test_block_matches_reference(rope_parameters, attn_implementation):
    torch.manual_seed(0)
    config = AttentionConfig(
        hidden_size=64,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=32,
        rope_parameters=rope_parameters,
        attn_implementation=attn_implementation,
    )
    attention = CausalSelfAttention(config).eval()
    x = torch.randn(2, 10, 64)
    # Second row runs past max_position_embeddings to exercise dynamic recompute
    position_ids = torch.stack([torch.arange(10), torch.arange(30, 40)])

    with torch.no_grad():
        out, _ = attention(x, position_ids=position_ids)

    expected = np_block(attention, x.double().numpy(), position_ids.numpy())
    np.testing.assert_allclose(out.numpy(), expected, rtol=1e-4, atol=1e-5)


def test_partial_rotary_block_matches_reference():
    torch.manual_seed(1)
    config = AttentionConfig(
        hidden_size=64,
        num_attention_heads=2,
        num_key_value_heads=1,
        partial_rotary_factor=0.25,
        max_position_embeddings=64,
    )
    attention = CausalSelfAttention(config).eval()
    x = torch.randn(1, 7, 64)
    position_ids = torch.arange(7).unsqueeze(0)

    with torch.no_grad():
        out, _ = attention(x, position_ids=position_ids)

    assert attention.rotary_emb.basis.rotary_dim == 8
    expected = np_block(attention, x.double().numpy(), position_ids.numpy())
    np.testing.assert_allclose(out.numpy(), expected, rtol=1e-4, atol=1e-5)


def test_default_rope_end_to_end():
    config = AttentionConfig(
        hidden_size=2048,
        num_attention_heads=16,
        max_position_embeddings=2048,
        rope_parameters=RopeParameters.default(10000.0),
    )
    rope = RotaryEmbedding(config)
    x = torch.zeros(1, 3, 2048)

    cos, sin = rope(x, torch.tensor([[0, 1, 2]]))

    assert config.head_dim == 128
    assert cos.shape == (1, 3, 128)
    assert cos[0, 0].tolist() == [1.0] * 128
    assert sin[0, 0].tolist() == [0.0] * 128


def test_config_file_to_forward(tmp_path):
    path = tmp_path / "attention.yaml"
    AttentionConfig(
        hidden_size=64,
        num_attention_heads=4,
        num_key_value_heads=1,
        rope_parameters=RopeParameters.yarn(factor=2.0, original_max_position_embeddings=1024),
        max_position_embeddings=2048,
        qk_norm="rmsnorm",
    ).save_yaml(path)

    config = AttentionConfig.from_file(path)
    attention = CausalSelfAttention(config).eval()
    x = torch.randn(1, 5, 64)

    out, weights = attention(x, need_weights=True)

    assert out.shape == (1, 5, 64)
    assert weights.shape == (1, 4, 5, 5)
    assert attention.rotary_emb.attention_scaling > 1.0
