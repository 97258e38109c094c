#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import enum
from dataclasses import dataclass, field, replace

import numpy as np
import torch

from splatfit.utils.image_utils import load_image


class CameraModel(enum.IntEnum):
    PINHOLE = 0
    FISHEYE = 1


def world_to_view(R, t):
    Rt = torch.eye(4, dtype=torch.float32)
    Rt[:3, :3] = torch.as_tensor(R, dtype=torch.float32)
    Rt[:3, 3] = torch.as_tensor(t, dtype=torch.float32).reshape(3)
    return Rt


@dataclass(frozen=True, eq=False)
class Camera:
    """
    A posed view. `R` and `T` are the world-to-camera rotation and
    translation (x_cam = R @ x_world + T), camera looks down +z.
    Intrinsics are expressed for an image of `width` x `height` pixels.
    """

    uid: int
    R: np.ndarray
    T: np.ndarray
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    image_name: str = ''
    image_path: str = ''
    camera_model: CameraModel = CameraModel.PINHOLE
    radial_distortion: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))
    tangential_distortion: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))

    def __post_init__(self):
        object.__setattr__(self, 'R', np.asarray(self.R, dtype=np.float32).reshape(3, 3))
        object.__setattr__(self, 'T', np.asarray(self.T, dtype=np.float32).reshape(3))

    @property
    def world_view_transform(self):
        return world_to_view(self.R, self.T)

    @property
    def camera_center(self):
        return torch.from_numpy(-self.R.T @ self.T)

    @property
    def K(self):
        K = torch.zeros(3, 3, dtype=torch.float32)
        K[0, 0] = self.fx
        K[1, 1] = self.fy
        K[0, 2] = self.cx
        K[1, 2] = self.cy
        K[2, 2] = 1.0
        return K

    def resized(self, width, height):
        ''' Same view with intrinsics rescaled to a new image size '''
        sx = float(width) / float(self.width)
        sy = float(height) / float(self.height)
        return replace(
            self,
            fx=self.fx * sx, fy=self.fy * sy,
            cx=self.cx * sx, cy=self.cy * sy,
            width=int(width), height=int(height),
        )

    def load_image(self, resolution=-1):
        return load_image(self.image_path, resolution)

    def __repr__(self):
        return (f"Camera(uid={self.uid}, name={self.image_name!r}, {self.width}x{self.height}, "
                f"model={self.camera_model.name})")
