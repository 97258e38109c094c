#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import torch

from splatfit.cfg.constants import SH_C0, SH_C1, SH_C2, SH_C3


def num_sh_bases(degree):
    return (degree + 1) ** 2


def eval_sh(deg, sh, dirs):
    """
    Evaluate spherical harmonics at unit directions
    using hardcoded SH polynomials.
    Works with torch/np/jnp.
    ... Can be 0 or more batch dimensions.
    Args:
        deg: int SH deg. Currently, 0-3 supported
        sh: SH coeffs [..., (deg+1) ** 2, C]
        dirs: unit directions [..., 3]
    Returns:
        [..., C]
    """
    if not 0 <= deg <= 3:
        raise ValueError(f"SH degree must lie in [0, 3], got {deg}")
    if sh.shape[-2] < num_sh_bases(deg):
        raise ValueError(f"degree {deg} needs {num_sh_bases(deg)} SH coefficients, got {sh.shape[-2]}")

    result = SH_C0 * sh[..., 0, :]
    if deg > 0:
        x, y, z = dirs[..., 0:1], dirs[..., 1:2], dirs[..., 2:3]
        result = (result -
                  SH_C1 * y * sh[..., 1, :] +
                  SH_C1 * z * sh[..., 2, :] -
                  SH_C1 * x * sh[..., 3, :])

        if deg > 1:
            xx, yy, zz = x * x, y * y, z * z
            xy, yz, xz = x * y, y * z, x * z
            result = (result +
                      SH_C2[0] * xy * sh[..., 4, :] +
                      SH_C2[1] * yz * sh[..., 5, :] +
                      SH_C2[2] * (2.0 * zz - xx - yy) * sh[..., 6, :] +
                      SH_C2[3] * xz * sh[..., 7, :] +
                      SH_C2[4] * (xx - yy) * sh[..., 8, :])

            if deg > 2:
                result = (result +
                          SH_C3[0] * y * (3 * xx - yy) * sh[..., 9, :] +
                          SH_C3[1] * xy * z * sh[..., 10, :] +
                          SH_C3[2] * y * (4 * zz - xx - yy) * sh[..., 11, :] +
                          SH_C3[3] * z * (2 * zz - 3 * xx - 3 * yy) * sh[..., 12, :] +
                          SH_C3[4] * x * (4 * zz - xx - yy) * sh[..., 13, :] +
                          SH_C3[5] * z * (xx - yy) * sh[..., 14, :] +
                          SH_C3[6] * x * (xx - 3 * yy) * sh[..., 15, :])
    return result


def RGB2SH(rgb):
    return (rgb - 0.5) / SH_C0


def compute_colors(means, shs, camera_center, degree):
    ''' View-dependent RGB of every Gaussian seen from `camera_center`, clamped at 0 '''
    dirs = means - camera_center.to(means)
    dirs = dirs / torch.linalg.norm(dirs, dim=-1, keepdim=True).clamp_min(1e-12)
    rgb = eval_sh(degree, shs, dirs) + 0.5
    return torch.clamp_min(rgb, 0.0)
