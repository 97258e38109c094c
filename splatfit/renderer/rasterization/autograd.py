#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

from dataclasses import dataclass
from typing import Optional

import torch
from torch.autograd import Function

from splatfit.renderer.rasterization.intersection import (
    isect_offset_encode,
    isect_tiles,
    tile_grid,
)
from splatfit.renderer.rasterization.projection import (
    project_gaussians_backward,
    project_gaussians_forward,
)
from splatfit.renderer.rasterization.rasterize import rasterize_backward, rasterize_forward
from splatfit.utils.spherical_harmonics import compute_colors


@dataclass(frozen=True)
class RasterizeSettings:
    viewmat: torch.Tensor
    K: torch.Tensor
    camera_center: torch.Tensor
    width: int
    height: int
    active_sh_degree: int = 0
    scaling_modifier: float = 1.0
    eps2d: float = 0.3
    near_plane: float = 0.01
    far_plane: float = 1e10
    radius_clip: float = 0.0
    tile_size: int = 16


def intersect(means2d, radii, depths, width, height, tile_size):
    ''' Tile assignment shared by both rasterizer paths '''
    tile_width, tile_height = tile_grid(width, height, tile_size)
    _, isect_tile_ids, _, flatten_ids = isect_tiles(
        means2d, radii, depths, tile_size, tile_width, tile_height)
    isect_offsets = isect_offset_encode(isect_tile_ids, tile_width * tile_height)
    return isect_offsets, flatten_ids


def _or_zeros(grad, like):
    return torch.zeros_like(like) if grad is None else grad


class ProjectGaussians(Function):
    """
    means, quats, scales (and optionally the view matrix) to screen-space
    Gaussians. Gradients come from the analytic backward; `opacities` only
    drives culling and is not differentiated here.
    """

    @staticmethod
    def forward(ctx, means, quats, scales, viewmat, K, width, height,
                eps2d, near_plane, far_plane, radius_clip, opacities, calc_compensations):
        radii, means2d, depths, conics, compensations = project_gaussians_forward(
            means, quats, scales, viewmat, K, width, height,
            eps2d=eps2d, near_plane=near_plane, far_plane=far_plane,
            radius_clip=radius_clip,
            opacities=None if opacities is None else opacities.detach(),
            calc_compensations=calc_compensations,
        )
        ctx.mark_non_differentiable(radii)
        ctx.width = width
        ctx.height = height
        ctx.eps2d = eps2d
        ctx.calc_compensations = calc_compensations
        ctx.save_for_backward(means, quats, scales, viewmat, K, radii, conics, compensations)
        return radii, means2d, depths, conics, compensations

    @staticmethod
    def backward(ctx, v_radii, v_means2d, v_depths, v_conics, v_compensations):
        means, quats, scales, viewmat, K, radii, conics, compensations = ctx.saved_tensors
        N = means.shape[0]
        v_means, v_quats, v_scales, v_viewmat = project_gaussians_backward(
            means, quats, scales, viewmat, K, ctx.width, ctx.height,
            radii, conics, compensations,
            _or_zeros(v_means2d, means[:, :2]),
            _or_zeros(v_depths, means.new_zeros(N)),
            _or_zeros(v_conics, conics),
            v_compensations if ctx.calc_compensations else None,
            eps2d=ctx.eps2d,
        )
        if not ctx.needs_input_grad[3]:
            v_viewmat = None
        return (v_means, v_quats, v_scales, v_viewmat,
                None, None, None, None, None, None, None, None, None)


class RasterizeGaussians(Function):
    """
    Screen-space Gaussians to an (H, W, C) image and (H, W, 1) alpha.

    Saves the sorted tile assignment, the final transmittance and the
    per-pixel contributor counts so backward replays exactly the forward
    compositing. When `means2d_absgrad` is given, backward adds the summed
    absolute per-pixel 2D mean gradients into it.
    """

    @staticmethod
    def forward(ctx, means2d, conics, colors, opacities, width, height, tile_size,
                isect_offsets, flatten_ids, means2d_absgrad=None):
        render_colors, render_alphas, final_Ts, n_contrib = rasterize_forward(
            means2d, conics, colors, opacities, width, height,
            tile_size, isect_offsets, flatten_ids)
        ctx.width = width
        ctx.height = height
        ctx.tile_size = tile_size
        ctx.means2d_absgrad = means2d_absgrad
        ctx.save_for_backward(means2d, conics, colors, opacities, isect_offsets, flatten_ids,
                              render_colors, final_Ts, n_contrib)
        return render_colors, render_alphas

    @staticmethod
    def backward(ctx, v_render_colors, v_render_alphas):
        (means2d, conics, colors, opacities, isect_offsets, flatten_ids,
         render_colors, final_Ts, n_contrib) = ctx.saved_tensors
        absgrad = ctx.means2d_absgrad is not None
        v_means2d, v_conics, v_colors, v_opacities, v_abs = rasterize_backward(
            means2d, conics, colors, opacities, ctx.width, ctx.height, ctx.tile_size,
            isect_offsets, flatten_ids, render_colors, final_Ts, n_contrib,
            _or_zeros(v_render_colors, render_colors),
            _or_zeros(v_render_alphas, final_Ts[..., None]),
            absgrad=absgrad,
        )
        if absgrad:
            ctx.means2d_absgrad.add_(v_abs.to(ctx.means2d_absgrad))
        return (v_means2d, v_conics, v_colors, v_opacities,
                None, None, None, None, None, None)


def _activate(means, scales_raw, rotations_raw, opacities_raw, sh0, shN, settings):
    scales = torch.exp(scales_raw) * settings.scaling_modifier
    opacities = torch.sigmoid(opacities_raw).reshape(-1)
    shs = torch.cat([sh0, shN], dim=1)
    colors = compute_colors(means, shs, settings.camera_center, settings.active_sh_degree)
    return scales, rotations_raw, opacities, colors


class FastGSRasterize(Function):
    """
    Fused path for training: activations, SH colours, projection, tile
    sorting and rasterization in one Function, taking the raw parameters.

    The background is not composited: the returned (3, H, W) image is the
    premultiplied splat colour and (1, H, W) alpha is its coverage, the
    caller blends a background if it needs one. Radii come back as a
    non-differentiable output.

    Backward adds, for every Gaussian visible in this view,
    ||dL/dmean2d * (W/2, H/2)|| to densification_info[:, 0] and 1 to
    densification_info[:, 1].
    """

    @staticmethod
    def forward(ctx, means, scales_raw, rotations_raw, opacities_raw, sh0, shN,
                densification_info, settings: RasterizeSettings):
        with torch.no_grad():
            scales, quats, opacities, colors = _activate(
                means, scales_raw, rotations_raw, opacities_raw, sh0, shN, settings)
            radii, means2d, depths, conics, _ = project_gaussians_forward(
                means, quats, scales, settings.viewmat, settings.K,
                settings.width, settings.height,
                eps2d=settings.eps2d, near_plane=settings.near_plane,
                far_plane=settings.far_plane, radius_clip=settings.radius_clip,
                opacities=opacities,
            )
            isect_offsets, flatten_ids = intersect(
                means2d, radii, depths, settings.width, settings.height, settings.tile_size)
            render_colors, render_alphas, final_Ts, n_contrib = rasterize_forward(
                means2d, conics, colors, opacities, settings.width, settings.height,
                settings.tile_size, isect_offsets, flatten_ids)

        ctx.settings = settings
        ctx.densification_info = densification_info
        ctx.mark_non_differentiable(radii)
        ctx.save_for_backward(means, scales_raw, rotations_raw, opacities_raw, sh0, shN,
                              radii, means2d, conics, colors, isect_offsets, flatten_ids,
                              render_colors, final_Ts, n_contrib)

        image = render_colors.permute(2, 0, 1).contiguous()
        alpha = render_alphas.permute(2, 0, 1).contiguous()
        return image, alpha, radii

    @staticmethod
    def backward(ctx, v_image, v_alpha, v_radii):
        (means, scales_raw, rotations_raw, opacities_raw, sh0, shN,
         radii, means2d, conics, colors, isect_offsets, flatten_ids,
         render_colors, final_Ts, n_contrib) = ctx.saved_tensors
        settings = ctx.settings
        W, H = settings.width, settings.height

        v_render_colors = _or_zeros(v_image, render_colors.permute(2, 0, 1)).permute(1, 2, 0)
        v_render_alphas = _or_zeros(v_alpha, final_Ts[None]).permute(1, 2, 0)

        with torch.no_grad():
            opacities = torch.sigmoid(opacities_raw).reshape(-1)
            v_means2d, v_conics, v_colors, v_opacities, _ = rasterize_backward(
                means2d, conics, colors, opacities, W, H, settings.tile_size,
                isect_offsets, flatten_ids, render_colors, final_Ts, n_contrib,
                v_render_colors, v_render_alphas)

            scales = torch.exp(scales_raw) * settings.scaling_modifier
            v_means, v_quats, v_scales, _ = project_gaussians_backward(
                means, rotations_raw, scales, settings.viewmat, settings.K, W, H,
                radii, conics, None,
                v_means2d, means.new_zeros(means.shape[0]), v_conics,
                eps2d=settings.eps2d,
            )

            info = ctx.densification_info
            if info is not None and info.numel() > 0:
                visible = radii > 0
                scaled = v_means2d * v_means2d.new_tensor([W * 0.5, H * 0.5])
                info[visible, 0] += torch.linalg.norm(scaled[visible], dim=-1).to(info.dtype)
                info[visible, 1] += 1

        # replay activations and SH evaluation with autograd
        with torch.enable_grad():
            leaves = [t.detach().requires_grad_(True)
                      for t in (means, scales_raw, rotations_raw, opacities_raw, sh0, shN)]
            l_means, l_scales, l_rots, l_opac, l_sh0, l_shN = leaves
            scales_act, _, opac_act, colors_act = _activate(
                l_means, l_scales, l_rots, l_opac, l_sh0, l_shN, settings)
            outputs = [scales_act, opac_act, colors_act]
            grads = [v_scales, v_opacities, v_colors]
            if leaves[0].shape[0] > 0:
                torch.autograd.backward(outputs, grads)

        def leaf_grad(leaf):
            return torch.zeros_like(leaf) if leaf.grad is None else leaf.grad

        v_means_total = v_means + leaf_grad(l_means)
        return (v_means_total, leaf_grad(l_scales), v_quats, leaf_grad(l_opac),
                leaf_grad(l_sh0), leaf_grad(l_shN), None, None)
