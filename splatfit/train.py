#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import argparse
import os
import sys

import torch
from loguru import logger

from splatfit.cfg.config import (
    DatasetConfig,
    OptimizationParams,
    from_dict,
    load_optimization_params,
    save_config,
)
from splatfit.datasets.dataset import split_dataset
from splatfit.datasets.transforms import read_transforms_scene
from splatfit.errors import SplatfitError
from splatfit.models.splat_data import SplatData
from splatfit.trainer.trainer import Trainer
from splatfit.utils.general import safe_state


def training(dataset_config, opt_params, device):
    safe_state(opt_params.seed)
    scene = read_transforms_scene(dataset_config.data_path)
    train_dataset, val_dataset = split_dataset(scene.cameras, dataset_config)

    splats = SplatData.init_model_from_pointcloud(
        opt_params, scene.scene_center, scene.point_cloud,
        scene_scale=scene.scene_scale, device=device)
    logger.info(f"Scene scale: {splats.scene_scale:.4f}")

    os.makedirs(dataset_config.output_path, exist_ok=True)
    save_config(opt_params, os.path.join(dataset_config.output_path, "optimization_params.json"))
    save_config(dataset_config, os.path.join(dataset_config.output_path, "dataset_config.json"))

    trainer = Trainer(splats, train_dataset, opt_params, dataset_config.output_path,
                      val_dataset=val_dataset, device=device)
    try:
        trainer.run()
    finally:
        trainer.shutdown()
    return trainer


def get_parser():
    parser = argparse.ArgumentParser(description="Train a Gaussian splatting scene")
    parser.add_argument("-d", "--data-path", required=True, type=str)
    parser.add_argument("-o", "--output-path", default="output", type=str)
    parser.add_argument("-c", "--config", default=None, type=str,
                        help="JSON file with optimization parameters")
    parser.add_argument("-i", "--iterations", default=None, type=int)
    parser.add_argument("-r", "--resolution", default=-1, type=int)
    parser.add_argument("--test-every", default=8, type=int)
    parser.add_argument("--no-preload", action="store_true")
    parser.add_argument("--device", default="cuda" if torch.cuda.is_available() else "cpu")
    return parser


def main(argv=None):
    args = get_parser().parse_args(argv)
    try:
        dataset_config = from_dict(DatasetConfig, {
            "data_path": args.data_path,
            "output_path": args.output_path,
            "resolution": args.resolution,
            "test_every": args.test_every,
            "preload": not args.no_preload,
        })
        opt_params = load_optimization_params(args.config) if args.config else OptimizationParams()
        if args.iterations is not None:
            opt_params.iterations = args.iterations
            opt_params.validate()
        training(dataset_config, opt_params, args.device)
    except SplatfitError as e:
        logger.error(str(e))
        return 1
    logger.info("Training complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
