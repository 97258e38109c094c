#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import math

import torch


def tile_grid(width, height, tile_size):
    return math.ceil(width / tile_size), math.ceil(height / tile_size)


def get_tile_rect(means2d, radii, tile_size, tile_width, tile_height):
    """
    Half-open tile rectangle [min, max) touched by each Gaussian's
    radius-sized square, clipped to the tile grid.
    """
    r = radii.to(means2d.dtype)
    tile_min = torch.stack([
        torch.floor((means2d[:, 0] - r) / tile_size).clamp(0, tile_width),
        torch.floor((means2d[:, 1] - r) / tile_size).clamp(0, tile_height),
    ], dim=-1).long()
    tile_max = torch.stack([
        torch.ceil((means2d[:, 0] + r) / tile_size).clamp(0, tile_width),
        torch.ceil((means2d[:, 1] + r) / tile_size).clamp(0, tile_height),
    ], dim=-1).long()
    return tile_min, tile_max


@torch.no_grad()
def isect_tiles(means2d, radii, depths, tile_size, tile_width, tile_height):
    """
    Emit one (tile, Gaussian) pair per tile overlapped by each visible
    Gaussian and sort the pairs by tile id, then depth.

    Returns:
        tiles_per_gauss (N,) number of tiles each Gaussian touches
        isect_tile_ids (M,) tile id of every sorted pair
        isect_depths (M,) depth of every sorted pair
        flatten_ids (M,) Gaussian index of every sorted pair
    """
    device = means2d.device
    N = means2d.shape[0]
    tile_min, tile_max = get_tile_rect(means2d, radii, tile_size, tile_width, tile_height)
    extent = (tile_max - tile_min).clamp(min=0)
    tiles_per_gauss = extent[:, 0] * extent[:, 1]
    tiles_per_gauss = torch.where(radii > 0, tiles_per_gauss, torch.zeros_like(tiles_per_gauss))

    n_isects = int(tiles_per_gauss.sum().item()) if N > 0 else 0
    if n_isects == 0:
        empty = torch.zeros(0, dtype=torch.long, device=device)
        return tiles_per_gauss, empty, depths.new_zeros(0), empty

    gauss_ids = torch.repeat_interleave(torch.arange(N, device=device), tiles_per_gauss)
    first = torch.cumsum(tiles_per_gauss, dim=0) - tiles_per_gauss
    local = torch.arange(n_isects, device=device) - first[gauss_ids]
    span_x = extent[gauss_ids, 0]
    tx = tile_min[gauss_ids, 0] + local % span_x
    ty = tile_min[gauss_ids, 1] + local // span_x
    tile_ids = ty * tile_width + tx

    pair_depths = depths[gauss_ids]
    # stable sort on the secondary key first, then on the primary key
    order = torch.sort(pair_depths, stable=True).indices
    order = order[torch.sort(tile_ids[order], stable=True).indices]

    return tiles_per_gauss, tile_ids[order], pair_depths[order], gauss_ids[order]


@torch.no_grad()
def isect_offset_encode(isect_tile_ids, n_tiles):
    ''' CSR offsets: the pairs of tile t live in [offsets[t], offsets[t + 1]) '''
    counts = torch.bincount(isect_tile_ids, minlength=n_tiles)
    offsets = torch.zeros(n_tiles + 1, dtype=torch.long, device=isect_tile_ids.device)
    offsets[1:] = torch.cumsum(counts, dim=0)
    return offsets
