#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import enum
from typing import List, NamedTuple

import numpy as np
import torch
from loguru import logger
from tqdm import tqdm

from splatfit.datasets.camera import Camera
from splatfit.errors import ConfigurationError
from splatfit.utils.graphics import BasicPointCloud, get_center_and_diag


class Split(enum.Enum):
    TRAIN = 'train'
    VAL = 'val'
    ALL = 'all'


class SceneInfo(NamedTuple):
    cameras: List[Camera]
    point_cloud: BasicPointCloud
    scene_center: np.ndarray
    scene_scale: float


def camera_extent(cameras):
    ''' Radius of the camera rig, enlarged by 10% '''
    if len(cameras) == 0:
        raise ConfigurationError("No cameras to compute the scene extent from")
    centers = [cam.camera_center.numpy().reshape(1, 3) for cam in cameras]
    _, diag = get_center_and_diag(centers)
    return float(diag) * 1.1


class CameraDataset(torch.utils.data.Dataset):
    """
    Posed views of one scene. Every `test_every`-th camera goes to the
    validation split, the rest to training.

    Images are decoded on first access (or all up front with `preload`);
    each camera is rescaled so its intrinsics match the decoded image.
    """

    def __init__(self, cameras, config, split=Split.ALL):
        if len(cameras) == 0:
            raise ConfigurationError("CameraDataset needs at least one camera")
        self.config = config
        self.split = Split(split)
        self._cameras = list(cameras)

        test_every = config.test_every
        self.indices = []
        for i in range(len(self._cameras)):
            is_test = (i % test_every) == 0
            if (self.split == Split.ALL
                    or (self.split == Split.TRAIN and not is_test)
                    or (self.split == Split.VAL and is_test)):
                self.indices.append(i)
        logger.info(f"Dataset created with {len(self.indices)} images (split: {self.split.value})")

        self.cached_data = {}
        if config.preload:
            self.preload()

    @property
    def cameras(self):
        return [self._cameras[i] for i in self.indices]

    def __len__(self):
        return len(self.indices)

    def _load(self, idx):
        cam = self._cameras[idx]
        image = cam.load_image(self.config.resolution)
        _, h, w = image.shape
        if (w, h) != (cam.width, cam.height):
            cam = cam.resized(w, h)
        return cam, image

    def preload(self):
        if len(self.cached_data) == len(self.indices):
            logger.info("Dataset already preloaded.")
            return
        for i in tqdm(range(len(self.indices)), desc="Loading images"):
            if i not in self.cached_data:
                self.cached_data[i] = self._load(self.indices[i])

    def get(self, i):
        if i < 0 or i >= len(self.indices):
            raise IndexError(f"Dataset index {i} out of range for {len(self.indices)} images")
        if i in self.cached_data:
            return self.cached_data[i]
        datum = self._load(self.indices[i])
        self.cached_data[i] = datum
        return datum

    def __getitem__(self, i):
        return self.get(i)


def split_dataset(cameras, config):
    return (CameraDataset(cameras, config, Split.TRAIN),
            CameraDataset(cameras, config, Split.VAL))
