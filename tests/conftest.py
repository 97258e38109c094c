"""Pytest configuration and shared fixtures."""

import json

import cv2
import numpy as np
import pytest
import torch
from plyfile import PlyData, PlyElement

from splatfit.cfg.config import OptimizationParams
from splatfit.datasets.camera import Camera
from splatfit.models.splat_data import SplatData
from splatfit.utils.general import inverse_sigmoid
from splatfit.utils.spherical_harmonics import RGB2SH, num_sh_bases


class InMemoryDataset:
    """(camera, image) pairs held in memory, same interface as CameraDataset."""

    def __init__(self, samples):
        self.samples = list(samples)

    def __len__(self):
        return len(self.samples)

    def get(self, i):
        return self.samples[i]

    @property
    def cameras(self):
        return [cam for cam, _ in self.samples]


@pytest.fixture(autouse=True)
def seed_everything():
    torch.manual_seed(0)
    np.random.seed(0)


@pytest.fixture
def make_camera():
    """Factory for pinhole cameras looking down +z from `position`."""

    def _make(width=32, height=32, focal=40.0, position=(0.0, 0.0, 0.0), uid=0, **kwargs):
        T = -np.asarray(position, dtype=np.float32)
        return Camera(
            uid=uid, R=np.eye(3, dtype=np.float32), T=T,
            fx=focal, fy=focal, cx=width / 2.0, cy=height / 2.0,
            width=width, height=height, image_name=f"view_{uid}", **kwargs,
        )

    return _make


@pytest.fixture
def make_splats():
    """Factory building a SplatData from activated values."""

    def _make(means, rgb=None, opacity=0.5, scale=0.1, rotation=None, sh_degree=0,
              dtype=torch.float32, scene_scale=1.0):
        means = torch.as_tensor(means, dtype=dtype).reshape(-1, 3)
        n = means.shape[0]
        if rgb is None:
            rgb = torch.full((n, 3), 0.5, dtype=dtype)
        rgb = torch.as_tensor(rgb, dtype=dtype).reshape(n, 3)
        opacity = torch.as_tensor(opacity, dtype=dtype).expand(n).reshape(n, 1)
        scale = torch.as_tensor(scale, dtype=dtype)
        if scale.dim() == 0 or tuple(scale.shape) == (3,):
            scale = scale.expand(n, 3)
        if rotation is None:
            rotation = torch.zeros((n, 4), dtype=dtype)
            rotation[:, 0] = 1.0
        rotation = torch.as_tensor(rotation, dtype=dtype).reshape(n, 4)

        splats = SplatData(sh_degree)
        splats.scene_scale = scene_scale
        splats.replace_parameters({
            'means': means.clone(),
            'sh0': RGB2SH(rgb).reshape(n, 1, 3).clone(),
            'shN': torch.zeros((n, num_sh_bases(sh_degree) - 1, 3), dtype=dtype),
            'scaling': torch.log(scale).reshape(n, 3).clone(),
            'rotation': rotation.clone(),
            'opacity': inverse_sigmoid(opacity).clone(),
        })
        return splats

    return _make


@pytest.fixture
def opt_params():
    params = OptimizationParams()
    params.eval_steps = []
    params.save_steps = []
    return params


@pytest.fixture
def random_scene(make_splats):
    """A handful of Gaussians in front of the origin camera."""

    def _make(n=10, dtype=torch.float32, sh_degree=0):
        g = torch.Generator().manual_seed(1)
        # x, y in [-0.5, 0.5], depth in [3, 4]
        means = torch.rand((n, 3), generator=g, dtype=dtype) - torch.tensor([0.5, 0.5, -3.0], dtype=dtype)
        rgb = torch.rand((n, 3), generator=g, dtype=dtype) * 0.8 + 0.1
        scale = torch.rand((n, 3), generator=g, dtype=dtype) * 0.1 + 0.05
        return make_splats(means, rgb=rgb, opacity=0.6, scale=scale, sh_degree=sh_degree, dtype=dtype)

    return _make


@pytest.fixture
def write_scene():
    """Factory writing a small transforms.json scene with flat-colour images."""

    def _write(root, n_frames=4, size=16, with_ply=False, n_points=2, **extra):
        (root / "images").mkdir(parents=True)
        frames = []
        for i in range(n_frames):
            img = np.full((size, size, 3), 40 * i, dtype=np.uint8)
            cv2.imwrite(str(root / "images" / f"{i:03d}.png"), img)
            # OpenGL camera-to-world at (0, 0, 4 + i) looking down -z
            c2w = np.eye(4)
            c2w[2, 3] = 4.0 + i
            frames.append({"file_path": f"images/{i:03d}", "transform_matrix": c2w.tolist()})
        transforms = {"camera_angle_x": 0.8, "frames": frames}
        transforms.update(extra)
        (root / "transforms.json").write_text(json.dumps(transforms))

        if with_ply:
            rng = np.random.default_rng(0)
            vertex = np.empty(n_points, dtype=[('x', 'f4'), ('y', 'f4'), ('z', 'f4'),
                                               ('red', 'u1'), ('green', 'u1'), ('blue', 'u1')])
            xyz = rng.uniform(-0.5, 0.5, size=(n_points, 3))
            vertex['x'], vertex['y'], vertex['z'] = xyz[:, 0], xyz[:, 1], xyz[:, 2]
            rgb = rng.integers(0, 256, size=(n_points, 3))
            vertex['red'], vertex['green'], vertex['blue'] = rgb[:, 0], rgb[:, 1], rgb[:, 2]
            PlyData([PlyElement.describe(vertex, 'vertex')]).write(str(root / "points3d.ply"))
        return root

    return _write
