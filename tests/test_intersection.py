import torch

from splatfit.renderer.rasterization.intersection import (
    get_tile_rect,
    isect_offset_encode,
    isect_tiles,
    tile_grid,
)


def test_tile_grid_rounds_up():
    assert tile_grid(32, 32, 16) == (2, 2)
    assert tile_grid(33, 17, 16) == (3, 2)
    assert tile_grid(8, 8, 16) == (1, 1)


def test_tile_rect_is_clipped_to_grid():
    means2d = torch.tensor([[8.0, 8.0], [-20.0, 40.0]])
    radii = torch.tensor([4, 30], dtype=torch.int32)
    tile_min, tile_max = get_tile_rect(means2d, radii, 16, 2, 2)
    assert tile_min[0].tolist() == [0, 0]
    assert tile_max[0].tolist() == [1, 1]
    assert tile_min[1].tolist() == [0, 0]
    assert tile_max[1].tolist() == [1, 2]


def test_gaussian_duplicated_across_tiles():
    # centred on the corner shared by all four tiles
    means2d = torch.tensor([[16.0, 16.0]])
    radii = torch.tensor([3], dtype=torch.int32)
    depths = torch.tensor([2.0])
    tiles_per_gauss, tile_ids, isect_depths, flatten_ids = isect_tiles(means2d, radii, depths, 16, 2, 2)
    assert tiles_per_gauss.tolist() == [4]
    assert tile_ids.tolist() == [0, 1, 2, 3]
    assert flatten_ids.tolist() == [0, 0, 0, 0]
    assert isect_depths.tolist() == [2.0] * 4


def test_pairs_sorted_by_tile_then_depth():
    g = torch.Generator().manual_seed(11)
    n = 60
    means2d = torch.rand((n, 2), generator=g) * 64.0
    radii = torch.randint(1, 12, (n,), generator=g, dtype=torch.int32)
    radii[::7] = 0
    depths = torch.rand((n,), generator=g) * 10.0 + 0.5
    tile_width, tile_height = tile_grid(64, 64, 16)
    n_tiles = tile_width * tile_height

    tiles_per_gauss, tile_ids, isect_depths, flatten_ids = isect_tiles(
        means2d, radii, depths, 16, tile_width, tile_height)

    assert tiles_per_gauss[::7].sum() == 0
    assert tile_ids.shape[0] == int(tiles_per_gauss.sum())
    assert torch.all(tile_ids[1:] >= tile_ids[:-1])
    assert torch.equal(isect_depths, depths[flatten_ids])

    offsets = isect_offset_encode(tile_ids, n_tiles)
    assert offsets.shape == (n_tiles + 1,)
    assert offsets[0] == 0 and offsets[-1] == tile_ids.shape[0]
    for t in range(n_tiles):
        start, end = offsets[t].item(), offsets[t + 1].item()
        assert torch.all(tile_ids[start:end] == t)
        d = isect_depths[start:end]
        assert torch.all(d[1:] >= d[:-1])


def test_equal_depths_keep_index_order():
    means2d = torch.tensor([[8.0, 8.0]] * 3)
    radii = torch.tensor([2, 2, 2], dtype=torch.int32)
    depths = torch.tensor([1.0, 1.0, 1.0])
    _, _, _, flatten_ids = isect_tiles(means2d, radii, depths, 16, 1, 1)
    assert flatten_ids.tolist() == [0, 1, 2]


def test_empty_input():
    means2d = torch.zeros((0, 2))
    radii = torch.zeros((0,), dtype=torch.int32)
    depths = torch.zeros((0,))
    tiles_per_gauss, tile_ids, isect_depths, flatten_ids = isect_tiles(means2d, radii, depths, 16, 2, 2)
    assert tiles_per_gauss.numel() == 0
    assert tile_ids.numel() == 0 and flatten_ids.numel() == 0 and isect_depths.numel() == 0
    offsets = isect_offset_encode(tile_ids, 4)
    assert offsets.tolist() == [0, 0, 0, 0, 0]
