#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import math
from typing import NamedTuple

import numpy as np
from scipy.spatial import cKDTree


class BasicPointCloud(NamedTuple):
    points: np.ndarray
    colors: np.ndarray


def fov2focal(fov, pixels):
    return pixels / (2 * math.tan(fov / 2))


def normalize_colors(colors):
    ''' uint8 colors become floats in [0, 1], float colors are passed through '''
    colors = np.asarray(colors)
    if colors.dtype == np.uint8:
        return colors.astype(np.float32) / 255.0
    return colors.astype(np.float32)


def mean_knn_dist2(points, k=3):
    """
    Mean squared distance from every point to its k nearest neighbours,
    used to seed the initial Gaussian scale.
    """
    points = np.asarray(points, dtype=np.float64)
    n = points.shape[0]
    if n < 2:
        return np.ones(n, dtype=np.float32)
    k = min(k, n - 1)
    tree = cKDTree(points)
    # the closest hit is the point itself
    dists, _ = tree.query(points, k=k + 1)
    dist2 = np.square(dists[:, 1:]).mean(axis=1)
    return dist2.astype(np.float32)


def get_center_and_diag(cam_centers):
    cam_centers = np.vstack(cam_centers)
    avg_cam_center = np.mean(cam_centers, axis=0, keepdims=True)
    center = avg_cam_center
    dist = np.linalg.norm(cam_centers - center, axis=1, keepdims=True)
    diagonal = np.max(dist)
    return center.flatten(), diagonal
