#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import os

import cv2
import numpy as np
import torch

from splatfit.errors import ConfigurationError


def load_image(path, resolution=-1):
    """
    Decode an image into a float tensor (C, H, W) in [0, 1].

    `resolution` > 0 downsamples by that integer factor, -1 keeps the
    native size. An alpha channel, if present, is dropped.
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Image does not exist: {path}")
    img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if img is None:
        raise ConfigurationError(f"Failed to decode image: {path}")

    if img.ndim == 2:
        img = np.stack([img] * 3, axis=-1)
    elif img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_BGRA2RGB)
    else:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)

    if resolution is not None and resolution > 1:
        h, w = img.shape[:2]
        img = cv2.resize(img, (w // resolution, h // resolution), interpolation=cv2.INTER_AREA)

    scale = 65535.0 if img.dtype == np.uint16 else 255.0
    img = torch.from_numpy(img.astype(np.float32) / scale)
    return img.permute(2, 0, 1).contiguous()


@torch.no_grad()
def psnr(img1, img2):
    mse = ((img1 - img2) ** 2).reshape(-1).mean()
    return 20 * torch.log10(1.0 / torch.sqrt(mse))
