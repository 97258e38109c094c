#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from splatfit.cfg.constants import TILE_SIZE
from splatfit.datasets.camera import CameraModel
from splatfit.errors import ConfigurationError
from splatfit.renderer.rasterization.autograd import (
    FastGSRasterize,
    ProjectGaussians,
    RasterizeGaussians,
    RasterizeSettings,
    intersect,
)
from splatfit.utils.spherical_harmonics import compute_colors


@dataclass(frozen=True)
class RenderRequest:
    camera: object
    background: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    scaling_modifier: float = 1.0
    antialiased: bool = False
    render_depth: bool = False
    # axis-aligned (min_xyz, max_xyz); only Gaussians inside are drawn
    crop_box: Optional[Tuple[Tuple[float, float, float], Tuple[float, float, float]]] = None


@dataclass
class RenderResult:
    image: torch.Tensor
    alpha: torch.Tensor
    depth: Optional[torch.Tensor] = None
    num_visible: int = 0


def _check_camera(camera):
    if camera.camera_model != CameraModel.PINHOLE:
        raise ConfigurationError(
            f"Camera {camera.uid} uses the {camera.camera_model.name} model, only PINHOLE can be rasterized")


def _camera_tensors(camera, device, dtype):
    viewmat = camera.world_view_transform.to(device=device, dtype=dtype)
    K = camera.K.to(device=device, dtype=dtype)
    center = camera.camera_center.to(device=device, dtype=dtype)
    return viewmat, K, center


def _background(bg_color, device, dtype):
    if bg_color is None:
        return torch.zeros(3, dtype=dtype, device=device)
    return torch.as_tensor(bg_color, dtype=dtype, device=device).reshape(3)


def rasterize_gaussians(means, quats, scales, opacities, shs, active_sh_degree, camera,
                        bg_color=None, antialiased=False, render_depth=False, absgrad=False,
                        eps2d=0.3, near_plane=0.01, far_plane=1e10, tile_size=TILE_SIZE):
    """
    Composable differentiable rendering of activated Gaussians: projection
    and rasterization are separate autograd Functions, and the background
    is blended with the rendered alpha.

    Returns a dict with the (3, H, W) image, (1, H, W) alpha, optional
    (1, H, W) accumulated depth, the screen-space means (gradient retained),
    radii and the visibility mask.
    """
    _check_camera(camera)
    device, dtype = means.device, means.dtype
    width, height = camera.width, camera.height
    viewmat, K, center = _camera_tensors(camera, device, dtype)

    colors = compute_colors(means, shs, center, active_sh_degree)
    radii, means2d, depths, conics, compensations = ProjectGaussians.apply(
        means, quats, scales, viewmat, K, width, height,
        eps2d, near_plane, far_plane, 0.0, opacities, antialiased,
    )
    if means2d.requires_grad:
        means2d.retain_grad()
    if antialiased:
        opacities = opacities * compensations

    isect_offsets, flatten_ids = intersect(
        means2d.detach(), radii, depths.detach(), width, height, tile_size)

    if render_depth:
        colors = torch.cat([colors, depths[:, None]], dim=-1)
    means2d_absgrad = torch.zeros_like(means2d) if absgrad else None

    render_colors, render_alphas = RasterizeGaussians.apply(
        means2d, conics, colors, opacities, width, height, tile_size,
        isect_offsets, flatten_ids, means2d_absgrad,
    )

    bg = _background(bg_color, device, dtype)
    image = render_colors[..., :3] + (1.0 - render_alphas) * bg
    depth = render_colors[..., 3:4].permute(2, 0, 1) if render_depth else None

    return {
        "render": image.permute(2, 0, 1),
        "alpha": render_alphas.permute(2, 0, 1),
        "depth": depth,
        "viewspace_points": means2d,
        "means2d_absgrad": means2d_absgrad,
        "visibility_filter": radii > 0,
        "radii": radii,
    }


def render(splats, camera, bg_color=None, scaling_modifier=1.0, antialiased=False,
           render_depth=False, absgrad=False, eps2d=0.3, near_plane=0.01,
           far_plane=1e10, tile_size=TILE_SIZE):
    return rasterize_gaussians(
        means=splats.get_means,
        quats=splats.rotation_raw,
        scales=splats.get_scaling * scaling_modifier,
        opacities=splats.get_opacity.reshape(-1),
        shs=splats.get_shs,
        active_sh_degree=splats.active_sh_degree,
        camera=camera,
        bg_color=bg_color,
        antialiased=antialiased,
        render_depth=render_depth,
        absgrad=absgrad,
        eps2d=eps2d,
        near_plane=near_plane,
        far_plane=far_plane,
        tile_size=tile_size,
    )


def fast_render(splats, camera, densification_info=None, scaling_modifier=1.0,
                eps2d=0.3, near_plane=0.01, far_plane=1e10, tile_size=TILE_SIZE):
    """
    Fused training path. The background is NOT composited: "render" is the
    premultiplied splat colour and "alpha" its coverage, blend afterwards
    with `composite_background` if needed.

    `densification_info` defaults to the live splats.densification_info and
    receives the screen-space gradient statistics during backward.
    """
    _check_camera(camera)
    means = splats.means
    device, dtype = means.device, means.dtype
    viewmat, K, center = _camera_tensors(camera, device, dtype)
    settings = RasterizeSettings(
        viewmat=viewmat, K=K, camera_center=center,
        width=camera.width, height=camera.height,
        active_sh_degree=splats.active_sh_degree,
        scaling_modifier=scaling_modifier,
        eps2d=eps2d, near_plane=near_plane, far_plane=far_plane,
        tile_size=tile_size,
    )
    if densification_info is None:
        densification_info = splats.densification_info

    image, alpha, radii = FastGSRasterize.apply(
        means, splats.scaling_raw, splats.rotation_raw, splats.opacity_raw,
        splats.sh0, splats.shN, densification_info, settings,
    )
    return {
        "render": image,
        "alpha": alpha,
        "visibility_filter": radii > 0,
        "radii": radii,
    }


def composite_background(image, alpha, bg_color):
    bg = _background(bg_color, image.device, image.dtype)
    return image + (1.0 - alpha) * bg[:, None, None]


@torch.no_grad()
def render_request(splats, request: RenderRequest, eps2d=0.3, near_plane=0.01,
                   far_plane=1e10, tile_size=TILE_SIZE):
    ''' Viewer entry point: no gradients, optional crop box '''
    means = splats.get_means
    mask = None
    if request.crop_box is not None:
        lo = means.new_tensor(request.crop_box[0])
        hi = means.new_tensor(request.crop_box[1])
        mask = ((means >= lo) & (means <= hi)).all(dim=-1)

    def select(t):
        return t if mask is None else t[mask]

    out = rasterize_gaussians(
        means=select(means),
        quats=select(splats.rotation_raw),
        scales=select(splats.get_scaling) * request.scaling_modifier,
        opacities=select(splats.get_opacity.reshape(-1)),
        shs=select(splats.get_shs),
        active_sh_degree=splats.active_sh_degree,
        camera=request.camera,
        bg_color=request.background,
        antialiased=request.antialiased,
        render_depth=request.render_depth,
        eps2d=eps2d,
        near_plane=near_plane,
        far_plane=far_plane,
        tile_size=tile_size,
    )
    return RenderResult(
        image=out["render"].clamp(0.0, 1.0),
        alpha=out["alpha"],
        depth=out["depth"],
        num_visible=int(out["visibility_filter"].sum().item()),
    )
