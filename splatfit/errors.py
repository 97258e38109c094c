#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import torch


class SplatfitError(Exception):
    pass


class ConfigurationError(SplatfitError, ValueError):
    ''' Malformed hyperparameters or dataset, raised before training starts '''


class InvariantViolation(SplatfitError, RuntimeError):
    ''' Per-primitive tensors or optimizer moments disagree in length '''


class NumericalError(SplatfitError, FloatingPointError):
    ''' NaN/Inf found in a loss or gradient '''


def check_finite(name, tensor):
    if tensor is None or tensor.numel() == 0:
        return
    if not torch.isfinite(tensor).all():
        n_bad = (~torch.isfinite(tensor)).sum().item()
        raise NumericalError(f"{name} has {n_bad} non-finite entries")
