#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import torch

from splatfit.cfg.constants import ALPHA_THRESHOLD, MAX_ALPHA, TRANSMITTANCE_EPS

# Gaussians of one tile are composited this many at a time
CHUNK_SIZE = 256


def _tile_pixels(tile_id, tile_width, tile_size, width, height, dtype, device):
    ''' Flat indices and pixel-centre coordinates of the in-image pixels of a tile '''
    ty, tx = divmod(tile_id, tile_width)
    xs = torch.arange(tx * tile_size, min((tx + 1) * tile_size, width), device=device)
    ys = torch.arange(ty * tile_size, min((ty + 1) * tile_size, height), device=device)
    yy, xx = torch.meshgrid(ys, xs, indexing='ij')
    yy, xx = yy.reshape(-1), xx.reshape(-1)
    pix = yy * width + xx
    return pix, xx.to(dtype) + 0.5, yy.to(dtype) + 0.5


def _eval_alpha(means2d, conics, opacities, px, py):
    dx = means2d[None, :, 0] - px[:, None]
    dy = means2d[None, :, 1] - py[:, None]
    ca, cb, cc = conics[:, 0], conics[:, 1], conics[:, 2]
    power = -0.5 * (ca * dx * dx + cc * dy * dy) - cb * dx * dy
    G = torch.exp(power)
    raw = opacities[None, :] * G
    alpha = torch.clamp(raw, max=MAX_ALPHA)
    keep = (power <= 0) & (alpha >= ALPHA_THRESHOLD)
    alpha = torch.where(keep, alpha, torch.zeros_like(alpha))
    return alpha, keep, raw, G, dx, dy


def _exclusive_cumprod(x):
    ones = x.new_ones((x.shape[0], 1))
    return torch.cumprod(torch.cat([ones, x[:, :-1]], dim=1), dim=1)


def _tiles(isect_offsets):
    offsets = isect_offsets.tolist()
    for tile_id in range(len(offsets) - 1):
        start, end = offsets[tile_id], offsets[tile_id + 1]
        if end > start:
            yield tile_id, start, end


@torch.no_grad()
def rasterize_forward(means2d, conics, colors, opacities, width, height,
                      tile_size, isect_offsets, flatten_ids):
    """
    Front-to-back alpha compositing of the depth-sorted Gaussians of each tile.

    Args:
        means2d: (N, 2), conics: (N, 3), colors: (N, C), opacities: (N,)
        isect_offsets: (n_tiles + 1,) CSR offsets into flatten_ids
        flatten_ids: (M,) Gaussian ids sorted by tile then depth
    Returns:
        render_colors (H, W, C), render_alphas (H, W, 1),
        final_Ts (H, W) transmittance left after the last contributor,
        n_contrib (H, W) number of list entries visited before termination
    """
    dtype, device = means2d.dtype, means2d.device
    C = colors.shape[-1]
    tile_width = (width + tile_size - 1) // tile_size

    render_colors = torch.zeros((height * width, C), dtype=dtype, device=device)
    final_Ts = torch.ones(height * width, dtype=dtype, device=device)
    n_contrib = torch.zeros(height * width, dtype=torch.int32, device=device)

    for tile_id, start, end in _tiles(isect_offsets):
        pix, px, py = _tile_pixels(tile_id, tile_width, tile_size, width, height, dtype, device)
        P = pix.shape[0]
        ids = flatten_ids[start:end]

        T = torch.ones(P, dtype=dtype, device=device)
        acc = torch.zeros((P, C), dtype=dtype, device=device)
        done = torch.zeros(P, dtype=torch.bool, device=device)
        count = torch.full((P,), end - start, dtype=torch.int32, device=device)

        for c0 in range(0, end - start, CHUNK_SIZE):
            g = ids[c0:c0 + CHUNK_SIZE]
            alpha, _, _, _, _, _ = _eval_alpha(means2d[g], conics[g], opacities[g], px, py)
            alpha = alpha * (~done)[:, None]

            # transmittance after each entry; once it would drop below the
            # threshold that entry and everything behind it is dropped
            next_T = T[:, None] * torch.cumprod(1.0 - alpha, dim=1)
            stop = next_T < TRANSMITTANCE_EPS
            contrib = alpha * (~stop)

            T_excl = T[:, None] * _exclusive_cumprod(1.0 - contrib)
            acc = acc + (contrib * T_excl) @ colors[g]
            T = T * torch.prod(1.0 - contrib, dim=1)

            has_stop = stop.any(dim=1)
            newly = has_stop & ~done
            if newly.any():
                first = torch.argmax(stop.to(torch.int32), dim=1).to(torch.int32)
                count = torch.where(newly, c0 + first, count)
                done = done | has_stop
            if bool(done.all()):
                break

        render_colors[pix] = acc
        final_Ts[pix] = T
        n_contrib[pix] = count

    render_colors = render_colors.reshape(height, width, C)
    final_Ts = final_Ts.reshape(height, width)
    render_alphas = (1.0 - final_Ts)[..., None]
    return render_colors, render_alphas, final_Ts, n_contrib.reshape(height, width)


@torch.no_grad()
def rasterize_backward(means2d, conics, colors, opacities, width, height,
                       tile_size, isect_offsets, flatten_ids,
                       render_colors, final_Ts, n_contrib,
                       v_render_colors, v_render_alphas, absgrad=False):
    """
    Replay the forward compositing of each tile and push the pixel
    gradients back onto the Gaussians. Only the entries that contributed
    in the forward pass (position < n_contrib and alpha above threshold)
    receive gradient.

    Returns:
        v_means2d (N, 2), v_conics (N, 3), v_colors (N, C), v_opacities (N,)
        and, when `absgrad` is set, the per-Gaussian sum of absolute
        per-pixel 2D mean gradients (N, 2), otherwise None.
    """
    dtype, device = means2d.dtype, means2d.device
    C = colors.shape[-1]
    tile_width = (width + tile_size - 1) // tile_size

    v_means2d = torch.zeros_like(means2d)
    v_conics = torch.zeros_like(conics)
    v_colors = torch.zeros_like(colors)
    v_opacities = torch.zeros_like(opacities)
    v_means2d_abs = torch.zeros_like(means2d) if absgrad else None

    colors_flat = render_colors.reshape(-1, C)
    T_final_flat = final_Ts.reshape(-1)
    count_flat = n_contrib.reshape(-1)
    v_C_flat = v_render_colors.reshape(-1, C)
    v_A_flat = v_render_alphas.reshape(-1)

    for tile_id, start, end in _tiles(isect_offsets):
        pix, px, py = _tile_pixels(tile_id, tile_width, tile_size, width, height, dtype, device)
        P = pix.shape[0]
        ids = flatten_ids[start:end]

        v_C = v_C_flat[pix]
        v_A = v_A_flat[pix]
        T_final = T_final_flat[pix]
        C_total = colors_flat[pix]
        count = count_flat[pix].long()

        T = torch.ones(P, dtype=dtype, device=device)
        prefix = torch.zeros((P, C), dtype=dtype, device=device)

        for c0 in range(0, end - start, CHUNK_SIZE):
            g = ids[c0:c0 + CHUNK_SIZE]
            alpha, keep, raw, G, dx, dy = _eval_alpha(means2d[g], conics[g], opacities[g], px, py)
            pos = c0 + torch.arange(g.shape[0], device=device)
            contrib = keep & (pos[None, :] < count[:, None])
            alpha = torch.where(contrib, alpha, torch.zeros_like(alpha))

            T_excl = T[:, None] * _exclusive_cumprod(1.0 - alpha)
            w = alpha * T_excl
            col = colors[g]
            wc = w[..., None] * col[None]
            prefix_incl = prefix[:, None, :] + torch.cumsum(wc, dim=1)
            # colour composited behind each entry
            behind = C_total[:, None, :] - prefix_incl
            one_minus = 1.0 - alpha

            v_alpha = (v_C[:, None, :] * (T_excl[..., None] * col[None] - behind / one_minus[..., None])).sum(-1)
            v_alpha = v_alpha + v_A[:, None] * T_final[:, None] / one_minus
            # the 0.99 clamp has zero slope
            v_raw = torch.where(contrib & (raw < MAX_ALPHA), v_alpha, torch.zeros_like(v_alpha))

            og = opacities[g]
            v_power = v_raw * og[None, :] * G
            ca, cb, cc = conics[g, 0], conics[g, 1], conics[g, 2]
            v_mx = v_power * (-(ca * dx + cb * dy))
            v_my = v_power * (-(cc * dy + cb * dx))

            v_colors.index_add_(0, g, (w[..., None] * v_C[:, None, :]).sum(0))
            v_opacities.index_add_(0, g, (v_raw * G).sum(0))
            v_means2d.index_add_(0, g, torch.stack([v_mx.sum(0), v_my.sum(0)], dim=-1))
            v_conics.index_add_(0, g, torch.stack([
                (v_power * (-0.5 * dx * dx)).sum(0),
                (v_power * (-dx * dy)).sum(0),
                (v_power * (-0.5 * dy * dy)).sum(0),
            ], dim=-1))
            if absgrad:
                v_means2d_abs.index_add_(0, g, torch.stack([v_mx.abs().sum(0), v_my.abs().sum(0)], dim=-1))

            prefix = prefix_incl[:, -1, :]
            T = T * torch.prod(one_minus, dim=1)

    return v_means2d, v_conics, v_colors, v_opacities, v_means2d_abs
