import itertools

import pytest
import torch

from sparse_qk.kernels.patterns import (
    ASHAPE_INIT_WIDTH,
    PatternType,
    allowed,
    build_mask,
    resolve_pattern,
)


@pytest.mark.parametrize("pattern", list(PatternType))
@pytest.mark.parametrize("block_m,block_n,stride,phase", [(8, 8, 4, 0), (8, 8, 2, 1), (6, 12, 3, 2)])
def test_build_mask_matches_scalar_oracle(pattern, block_m, block_n, stride, phase):
    mask = build_mask(pattern, block_m, block_n, stride, phase)
    assert mask.shape == (block_m, block_n)
    assert mask.dtype == torch.bool
    for i, j in itertools.product(range(block_m), range(block_n)):
        expected = allowed(pattern, i, j, stride, phase, block_m=block_m, block_n=block_n)
        assert bool(mask[i, j]) == expected, (pattern, i, j)


def test_dense_and_no_boundary_expose_everything():
    for pattern in (PatternType.DENSE, PatternType.NO_BOUNDARY):
        assert bool(build_mask(pattern, 5, 7, 1, 0).all())


@pytest.mark.parametrize("stride,phase", [(1, 0), (2, 0), (2, 1), (4, 3)])
def test_grid_exposes_strided_lattice(stride, phase):
    block = 8
    mask = build_mask(PatternType.GRID, block, block, stride, phase)
    assert int(mask.sum()) == (block // stride) ** 2
    positions = {tuple(p) for p in torch.nonzero(mask).tolist()}
    expected = {
        (a * stride + phase, b * stride + phase)
        for a in range(block // stride)
        for b in range(block // stride)
    }
    assert positions == expected


def test_ashape_combines_sink_strip_and_causal_band():
    stride = 2
    mask = build_mask(PatternType.ASHAPE, 8, 8, stride, 0)
    for i in range(8):
        for j in range(8):
            in_strip = j < ASHAPE_INIT_WIDTH
            in_band = i - stride <= j <= i
            assert bool(mask[i, j]) == (in_strip or in_band)
    # row 7 sees the strip plus columns 5..7
    assert mask[7].tolist() == [True, True, True, True, False, True, True, True]


def test_vertical_slash_is_row_independent():
    mask = build_mask(PatternType.VERTICAL_SLASH, 6, 9, 3, 1)
    for row in mask:
        assert row.tolist() == [j % 3 == 1 for j in range(9)]


def test_boundary_variants_are_block_diagonal_and_identical():
    k_mask = build_mask(PatternType.K_BOUNDARY, 8, 8, 1, 0)
    q_mask = build_mask(PatternType.Q_BOUNDARY, 8, 8, 1, 0)
    two_d = build_mask(PatternType.TWO_D_BOUNDARY, 8, 8, 1, 0)
    assert torch.equal(k_mask, q_mask)
    assert torch.equal(k_mask, two_d)
    assert bool(k_mask[:4, :4].all()) and bool(k_mask[4:, 4:].all())
    assert not bool(k_mask[:4, 4:].any()) and not bool(k_mask[4:, :4].any())


def test_resolve_pattern_accepts_values_and_rejects_unknown():
    assert resolve_pattern("grid") is PatternType.GRID
    assert resolve_pattern("A_SHAPE") is PatternType.ASHAPE
    assert resolve_pattern(PatternType.TWO_D_BOUNDARY) is PatternType.TWO_D_BOUNDARY
    with pytest.raises(ValueError, match="Unknown pattern"):
        resolve_pattern("tri_shape")


def test_boundary_flag_covers_only_boundary_variants():
    boundary = {p for p in PatternType if p.is_boundary}
    assert boundary == {
        PatternType.NO_BOUNDARY,
        PatternType.K_BOUNDARY,
        PatternType.Q_BOUNDARY,
        PatternType.TWO_D_BOUNDARY,
    }
