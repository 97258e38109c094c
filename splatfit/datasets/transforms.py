#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import json
import os

import cv2
import numpy as np
from loguru import logger
from plyfile import PlyData

from splatfit.datasets.camera import Camera, CameraModel
from splatfit.datasets.dataset import SceneInfo, camera_extent
from splatfit.errors import ConfigurationError
from splatfit.utils.graphics import BasicPointCloud, fov2focal


def _find_transforms_file(path):
    if os.path.isdir(path):
        for name in ('transforms_train.json', 'transforms.json'):
            candidate = os.path.join(path, name)
            if os.path.isfile(candidate):
                return candidate
        raise ConfigurationError(f"Could not find transforms_train.json nor transforms.json in {path}")
    if not os.path.isfile(path):
        raise ConfigurationError(f"{path} is not a valid file")
    return path


def _image_path(dir_path, frame):
    image_path = os.path.join(dir_path, frame['file_path'])
    # blender frames have no extension
    if os.path.exists(image_path + '.png'):
        image_path = image_path + '.png'
    return image_path


def read_transforms(path):
    """
    Parse a NeRF-style transforms json into pinhole cameras.

    Camera-to-world matrices use the OpenGL convention (y up, z back) and
    are flipped to the y down, z forward convention used for rendering.

    Returns:
        (cameras, scene_center)
    """
    transforms_file = _find_transforms_file(path)
    dir_path = os.path.dirname(transforms_file)
    try:
        with open(transforms_file, 'r') as f:
            transforms = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"JSON parsing error in {transforms_file}: {e}") from e

    frames = transforms.get('frames')
    if not isinstance(frames, list) or len(frames) == 0:
        raise ConfigurationError(f"{transforms_file} has no frames")

    if 'w' in transforms and 'h' in transforms:
        w, h = int(transforms['w']), int(transforms['h'])
    else:
        logger.info("Could not find w and h in the transforms file, reading them from the first image")
        first = cv2.imread(_image_path(dir_path, frames[0]), cv2.IMREAD_UNCHANGED)
        if first is None:
            raise ConfigurationError(f"Failed to read image dimensions from {frames[0]['file_path']}")
        h, w = first.shape[:2]

    if 'fl_x' in transforms:
        fl_x = float(transforms['fl_x'])
    elif 'camera_angle_x' in transforms:
        fl_x = fov2focal(float(transforms['camera_angle_x']), w)
    else:
        raise ConfigurationError(f"{transforms_file} has neither fl_x nor camera_angle_x")

    if 'fl_y' in transforms:
        fl_y = float(transforms['fl_y'])
    elif 'camera_angle_y' in transforms:
        fl_y = fov2focal(float(transforms['camera_angle_y']), h)
    else:
        if w != h:
            raise ConfigurationError("no camera_angle_y given for a non-square image")
        fl_y = fl_x

    cx = float(transforms.get('cx', 0.5 * w))
    cy = float(transforms.get('cy', 0.5 * h))

    distortion = [float(transforms.get(k, 0.0)) for k in ('k1', 'k2', 'p1', 'p2')]
    if any(d != 0.0 for d in distortion):
        raise ConfigurationError(f"Lens distortion is not supported: k1, k2, p1, p2 = {distortion}")

    cameras = []
    for idx, frame in enumerate(frames):
        if 'transform_matrix' not in frame:
            raise ConfigurationError("expected all frames to contain transform_matrix")
        c2w = np.asarray(frame['transform_matrix'], dtype=np.float64)
        if c2w.shape != (4, 4):
            raise ConfigurationError(f"transform_matrix of frame {idx} has shape {c2w.shape}")
        c2w[:3, 1:3] *= -1
        w2c = np.linalg.inv(c2w)

        image_path = _image_path(dir_path, frame)
        cameras.append(Camera(
            uid=idx,
            R=w2c[:3, :3],
            T=w2c[:3, 3],
            fx=fl_x, fy=fl_y, cx=cx, cy=cy,
            width=w, height=h,
            image_name=os.path.basename(image_path),
            image_path=image_path,
            camera_model=CameraModel.PINHOLE,
        ))

    scene_center = np.zeros(3, dtype=np.float32)
    return cameras, scene_center


def generate_random_point_cloud(num_points=10000, seed=8128):
    rng = np.random.default_rng(seed)
    points = rng.uniform(-1.0, 1.0, size=(num_points, 3)).astype(np.float32)
    colors = rng.integers(0, 256, size=(num_points, 3), dtype=np.uint8)
    return BasicPointCloud(points=points, colors=colors)


def load_point_cloud(path):
    ''' Positions and uint8 colors of a vertex-only PLY '''
    plydata = PlyData.read(path)
    vertices = plydata['vertex']
    points = np.vstack([vertices['x'], vertices['y'], vertices['z']]).T.astype(np.float32)
    names = [p.name for p in vertices.properties]
    if all(c in names for c in ('red', 'green', 'blue')):
        colors = np.vstack([vertices['red'], vertices['green'], vertices['blue']]).T
        colors = colors.astype(np.uint8) if colors.dtype == np.uint8 else colors.astype(np.float32)
    else:
        colors = np.full_like(points, 0.5)
    return BasicPointCloud(points=points, colors=colors)


def read_transforms_scene(path):
    cameras, scene_center = read_transforms(path)
    dir_path = path if os.path.isdir(path) else os.path.dirname(path)
    ply_path = os.path.join(dir_path, 'points3d.ply')
    if os.path.exists(ply_path):
        point_cloud = load_point_cloud(ply_path)
        logger.info(f"Loaded {point_cloud.points.shape[0]} points from {ply_path}")
    else:
        point_cloud = generate_random_point_cloud()
        logger.warning(f"No points3d.ply in {dir_path}, starting from {point_cloud.points.shape[0]} random points")
    return SceneInfo(
        cameras=cameras,
        point_cloud=point_cloud,
        scene_center=scene_center,
        scene_scale=camera_extent(cameras),
    )
