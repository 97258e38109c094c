#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

TILE_SIZE = 16

# Gaussians whose alpha at a pixel falls below this are skipped
ALPHA_THRESHOLD = 1.0 / 255.0
MAX_ALPHA = 0.99
# Compositing stops once transmittance would drop below this
TRANSMITTANCE_EPS = 1e-4

# Half-FOV multiplier used to clamp the projection Jacobian
FRUSTUM_CLAMP = 1.3

SH_C0 = 0.28209479177387814
SH_C1 = 0.4886025119029199
SH_C2 = [
    1.0925484305920792,
    -1.0925484305920792,
    0.31539156525252005,
    -1.0925484305920792,
    0.5462742152960396,
]
SH_C3 = [
    -0.5900435899266435,
    2.890611442640554,
    -0.4570457994644658,
    0.3731763325901154,
    -0.4570457994644658,
    1.445305721320277,
    -0.5900435899266435,
]
