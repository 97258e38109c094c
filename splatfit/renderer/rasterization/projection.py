#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import torch

from splatfit.cfg.constants import ALPHA_THRESHOLD, FRUSTUM_CLAMP
from splatfit.utils.general import build_rotation


def _intrinsics(K):
    return K[0, 0], K[1, 1], K[0, 2], K[1, 2]


def _camera_space(means, viewmat):
    R = viewmat[:3, :3]
    t = viewmat[:3, 3]
    return means @ R.T + t, R


def _covariance_3d(quats, scales):
    Rq = build_rotation(quats)
    M = Rq * scales[:, None, :]
    return M @ M.transpose(1, 2), Rq, M


def _clamp_limits(K, width, height):
    fx, fy, cx, cy = _intrinsics(K)
    tan_fovx = 0.5 * width / fx
    tan_fovy = 0.5 * height / fy
    # 1.3x the half-FOV, measured from the principal point on each side
    extra = FRUSTUM_CLAMP - 1.0
    lim_x_pos = (width - cx) / fx + extra * tan_fovx
    lim_x_neg = cx / fx + extra * tan_fovx
    lim_y_pos = (height - cy) / fy + extra * tan_fovy
    lim_y_neg = cy / fy + extra * tan_fovy
    return lim_x_pos, lim_x_neg, lim_y_pos, lim_y_neg


def _perspective_jacobian(p_view, z_safe, K, width, height):
    """
    Jacobian of the pinhole projection at the camera-space means, with
    x/z and y/z clamped to the (enlarged) frustum. Also returns the clamped
    tx, ty and the masks of Gaussians that were not clamped.
    """
    fx, fy, _, _ = _intrinsics(K)
    lim_x_pos, lim_x_neg, lim_y_pos, lim_y_neg = _clamp_limits(K, width, height)
    x, y = p_view[:, 0], p_view[:, 1]
    rz = 1.0 / z_safe
    x_ratio = x * rz
    y_ratio = y * rz
    x_inside = (x_ratio >= -lim_x_neg) & (x_ratio <= lim_x_pos)
    y_inside = (y_ratio >= -lim_y_neg) & (y_ratio <= lim_y_pos)
    tx = z_safe * x_ratio.clamp(-lim_x_neg, lim_x_pos)
    ty = z_safe * y_ratio.clamp(-lim_y_neg, lim_y_pos)

    J = p_view.new_zeros((p_view.shape[0], 2, 3))
    J[:, 0, 0] = fx * rz
    J[:, 0, 2] = -fx * tx * rz * rz
    J[:, 1, 1] = fy * rz
    J[:, 1, 2] = -fy * ty * rz * rz
    return J, tx, ty, x_inside, y_inside


def _sym2x2(a, b, c):
    return torch.stack([torch.stack([a, b], -1), torch.stack([b, c], -1)], -2)


def project_gaussians_forward(means, quats, scales, viewmat, K, width, height,
                              eps2d=0.3, near_plane=0.01, far_plane=1e10,
                              radius_clip=0.0, opacities=None, calc_compensations=False):
    """
    EWA projection of 3D Gaussians into screen space.

    Args:
        means: (N, 3) world-space centres
        quats: (N, 4) quaternions (w, x, y, z), normalised here
        scales: (N, 3) activated scales
        viewmat: (4, 4) world-to-camera transform
        K: (3, 3) pinhole intrinsics
        opacities: optional (N,) activated opacities, Gaussians below 1/255 are culled
    Returns:
        radii (N,) int32, 0 for culled Gaussians
        means2d (N, 2) pixel coordinates, pixel u has its centre at u + 0.5
        depths (N,) camera-space z
        conics (N, 3) upper triangle (a, b, c) of the inverse 2D covariance
        compensations (N,) sqrt(det(cov2d) / det(cov2d + eps2d I)), ones if not requested
    """
    N = means.shape[0]
    p_view, R = _camera_space(means, viewmat)
    z = p_view[:, 2]
    in_depth = (z > near_plane) & (z < far_plane)
    z_safe = torch.where(in_depth, z, torch.ones_like(z))

    cov3d, _, _ = _covariance_3d(quats, scales)
    cov_cam = R @ cov3d @ R.T
    J, _, _, _, _ = _perspective_jacobian(p_view, z_safe, K, width, height)
    cov2d = J @ cov_cam @ J.transpose(1, 2)

    a0, b, c0 = cov2d[:, 0, 0], cov2d[:, 0, 1], cov2d[:, 1, 1]
    det_orig = a0 * c0 - b * b
    a = a0 + eps2d
    c = c0 + eps2d
    det = a * c - b * b

    valid = in_depth & (det > 0)
    det_safe = torch.where(valid, det, torch.ones_like(det))
    inv_det = 1.0 / det_safe
    conics = torch.stack([c * inv_det, -b * inv_det, a * inv_det], dim=-1)

    if calc_compensations:
        compensations = torch.sqrt(torch.clamp(det_orig * inv_det, min=0.0))
    else:
        compensations = torch.ones_like(z)

    # 3 sigma along the major axis
    b_mid = 0.5 * (a + c)
    v1 = b_mid + torch.sqrt(torch.clamp(b_mid * b_mid - det_safe, min=0.1))
    radius = torch.ceil(3.0 * torch.sqrt(v1))

    fx, fy, cx, cy = _intrinsics(K)
    means2d = torch.stack([
        fx * p_view[:, 0] / z_safe + cx,
        fy * p_view[:, 1] / z_safe + cy,
    ], dim=-1)

    valid = valid & (radius > radius_clip)
    valid = valid & (means2d[:, 0] + radius > 0) & (means2d[:, 0] - radius < width)
    valid = valid & (means2d[:, 1] + radius > 0) & (means2d[:, 1] - radius < height)
    if opacities is not None:
        valid = valid & (opacities.reshape(N) >= ALPHA_THRESHOLD)

    radii = torch.where(valid, radius, torch.zeros_like(radius)).to(torch.int32)
    keep = valid[:, None]
    means2d = torch.where(keep, means2d, torch.zeros_like(means2d))
    conics = torch.where(keep, conics, torch.zeros_like(conics))
    depths = torch.where(valid, z, torch.zeros_like(z))
    compensations = torch.where(valid, compensations, torch.zeros_like(compensations))
    return radii, means2d, depths, conics, compensations


def _quat_to_rotmat_vjp(quats, v_R):
    ''' Gradient of build_rotation(quats) w.r.t. the unnormalised quaternions '''
    norm = torch.linalg.norm(quats, dim=-1, keepdim=True)
    q = quats / norm
    w, x, y, z = q.unbind(-1)
    g = v_R
    v_w = 2 * (-z * g[:, 0, 1] + y * g[:, 0, 2] + z * g[:, 1, 0]
               - x * g[:, 1, 2] - y * g[:, 2, 0] + x * g[:, 2, 1])
    v_x = 2 * (y * g[:, 0, 1] + z * g[:, 0, 2] + y * g[:, 1, 0] - 2 * x * g[:, 1, 1]
               - w * g[:, 1, 2] + z * g[:, 2, 0] + w * g[:, 2, 1] - 2 * x * g[:, 2, 2])
    v_y = 2 * (-2 * y * g[:, 0, 0] + x * g[:, 0, 1] + w * g[:, 0, 2] + x * g[:, 1, 0]
               + z * g[:, 1, 2] - w * g[:, 2, 0] + z * g[:, 2, 1] - 2 * y * g[:, 2, 2])
    v_z = 2 * (-2 * z * g[:, 0, 0] - w * g[:, 0, 1] + x * g[:, 0, 2] + w * g[:, 1, 0]
               - 2 * z * g[:, 1, 1] + y * g[:, 1, 2] + x * g[:, 2, 0] + y * g[:, 2, 1])
    v_qn = torch.stack([v_w, v_x, v_y, v_z], dim=-1)
    # through q / |q|
    return (v_qn - q * (q * v_qn).sum(-1, keepdim=True)) / norm


def project_gaussians_backward(means, quats, scales, viewmat, K, width, height,
                               radii, conics, compensations,
                               v_means2d, v_depths, v_conics, v_compensations=None,
                               eps2d=0.3):
    """
    Analytic vector-Jacobian product of project_gaussians_forward.

    The intermediate covariances are recomputed from the inputs; culled
    Gaussians (radius 0) receive exactly zero gradient.

    Returns:
        v_means (N, 3), v_quats (N, 4), v_scales (N, 3), v_viewmat (4, 4)
    """
    valid = radii > 0
    vmask = valid[:, None].to(means.dtype)
    v_means2d = v_means2d * vmask
    v_depths = v_depths * valid.to(means.dtype)
    v_conics = v_conics * vmask

    p_view, R = _camera_space(means, viewmat)
    z = p_view[:, 2]
    z_safe = torch.where(valid, z, torch.ones_like(z))
    rz = 1.0 / z_safe
    fx, fy, _, _ = _intrinsics(K)

    cov3d, Rq, M = _covariance_3d(quats, scales)
    cov_cam = R @ cov3d @ R.T
    J, tx, ty, x_inside, y_inside = _perspective_jacobian(p_view, z_safe, K, width, height)

    # conic = inverse(cov2d + eps2d I)
    inv1 = _sym2x2(conics[:, 0], conics[:, 1], conics[:, 2])
    G = _sym2x2(v_conics[:, 0], 0.5 * v_conics[:, 1], v_conics[:, 2])
    v_cov2d = -inv1 @ G @ inv1

    if v_compensations is not None:
        v_comp = v_compensations * valid.to(means.dtype)
        cov2d = J @ cov_cam @ J.transpose(1, 2)
        a0, b0, c0 = cov2d[:, 0, 0], cov2d[:, 0, 1], cov2d[:, 1, 1]
        det0 = a0 * c0 - b0 * b0
        ok = valid & (det0 > 0) & (compensations > 0)
        det0_safe = torch.where(ok, det0, torch.ones_like(det0))
        inv0 = _sym2x2(c0, -b0, a0) / det0_safe[:, None, None]
        coeff = torch.where(ok, 0.5 * v_comp * compensations, torch.zeros_like(v_comp))
        v_cov2d = v_cov2d + coeff[:, None, None] * (inv0 - inv1)

    # cov2d = J cov_cam J^T
    v_cov_cam = J.transpose(1, 2) @ v_cov2d @ J
    v_J = 2.0 * v_cov2d @ J @ cov_cam

    # cov_cam = R cov3d R^T
    v_cov3d = R.T @ v_cov_cam @ R
    v_R = 2.0 * (v_cov_cam @ R @ cov3d).sum(0)

    # camera-space mean: projection, depth and Jacobian terms
    v_p = torch.zeros_like(p_view)
    v_p[:, 0] = fx * rz * v_means2d[:, 0]
    v_p[:, 1] = fy * rz * v_means2d[:, 1]
    v_p[:, 2] = -(fx * p_view[:, 0] * v_means2d[:, 0] + fy * p_view[:, 1] * v_means2d[:, 1]) * rz * rz
    v_p[:, 2] = v_p[:, 2] + v_depths

    rz2 = rz * rz
    rz3 = rz2 * rz
    dx_mul = x_inside.to(means.dtype)
    dy_mul = y_inside.to(means.dtype)
    v_p[:, 0] = v_p[:, 0] - fx * rz2 * v_J[:, 0, 2] * dx_mul
    v_p[:, 1] = v_p[:, 1] - fy * rz2 * v_J[:, 1, 2] * dy_mul
    # a clamped tx scales with z, so its J term only has one power of 1/z left
    v_p[:, 2] = v_p[:, 2] + (
        -fx * rz2 * v_J[:, 0, 0]
        - fy * rz2 * v_J[:, 1, 1]
        + (1.0 + dx_mul) * fx * tx * rz3 * v_J[:, 0, 2]
        + (1.0 + dy_mul) * fy * ty * rz3 * v_J[:, 1, 2]
    )
    v_p = v_p * vmask

    # p_view = R m + t
    v_means = v_p @ R
    v_R = v_R + v_p.T @ means
    v_t = v_p.sum(0)

    # cov3d = M M^T, M = Rq diag(s)
    v_M = 2.0 * v_cov3d @ M
    v_scales = (v_M * Rq).sum(1)
    v_Rq = v_M * scales[:, None, :]
    v_quats = _quat_to_rotmat_vjp(quats, v_Rq)

    v_viewmat = torch.zeros_like(viewmat)
    v_viewmat[:3, :3] = v_R
    v_viewmat[:3, 3] = v_t

    v_means = v_means * vmask
    v_quats = v_quats * vmask
    v_scales = v_scales * vmask
    return v_means, v_quats, v_scales, v_viewmat
