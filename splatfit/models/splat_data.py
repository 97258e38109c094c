#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import os

import numpy as np
import torch
from torch import nn
from loguru import logger
from plyfile import PlyData, PlyElement

from splatfit.errors import ConfigurationError, InvariantViolation
from splatfit.optim.adam import SplatAdam
from splatfit.utils.graphics import mean_knn_dist2, normalize_colors
from splatfit.utils.spherical_harmonics import RGB2SH, num_sh_bases
from splatfit.utils.general import (
    inverse_sigmoid,
    get_expon_lr_func,
)


# order of the optimizer groups and of the tensors in `params`
PARAM_NAMES = ('means', 'sh0', 'shN', 'scaling', 'rotation', 'opacity')


class SplatData:
    """
    The Gaussian population: per-primitive tensors stored pre-activation
    (log-scale, unnormalised quaternion, opacity logit) plus the
    transient densification statistics.

    Every per-primitive tensor shares the leading dimension N. Growth and
    pruning go through `replace_parameters` so all of them change together.
    """

    def setup_functions(self):
        self.scaling_activation = torch.exp
        self.scaling_inverse_activation = torch.log

        self.opacity_activation = torch.sigmoid

        self.rotation_activation = torch.nn.functional.normalize

    def __init__(self, sh_degree: int, device='cpu'):
        self.active_sh_degree = 0
        self.max_sh_degree = sh_degree
        self.device = torch.device(device)
        self._means = torch.empty(0)
        self._sh0 = torch.empty(0)
        self._shN = torch.empty(0)
        self._scaling = torch.empty(0)
        self._rotation = torch.empty(0)
        self._opacity = torch.empty(0)
        self.max_radii2D = torch.empty(0)
        self.densification_info = torch.empty(0)
        self.scene_scale = 1.0
        self.means_scheduler = None
        self.setup_functions()

    def state_dict(self, optimizer=None):
        save_dict = {
            'active_sh_degree': self.active_sh_degree,
            'max_sh_degree': self.max_sh_degree,
            'means': self._means.detach(),
            'sh0': self._sh0.detach(),
            'shN': self._shN.detach(),
            'scaling': self._scaling.detach(),
            'rotation': self._rotation.detach(),
            'opacity': self._opacity.detach(),
            'max_radii2D': self.max_radii2D,
            'densification_info': self.densification_info,
            'scene_scale': self.scene_scale,
        }
        if optimizer is not None:
            save_dict['optimizer'] = optimizer.state_dict()
        return save_dict

    def restore(self, state_dict, params=None):
        ''' Load a checkpoint. Returns a fresh optimizer when `params` is given. '''
        self.active_sh_degree = state_dict['active_sh_degree']
        self.max_sh_degree = state_dict['max_sh_degree']
        self.scene_scale = state_dict['scene_scale']
        self._set_tensors({name: state_dict[name].to(self.device) for name in PARAM_NAMES})
        self.max_radii2D = state_dict['max_radii2D'].to(self.device)
        self.densification_info = state_dict['densification_info'].to(self.device)

        optimizer = None
        if params is not None:
            optimizer = self.setup_optimizer(params)
            if 'optimizer' in state_dict:
                optimizer.load_state_dict(state_dict['optimizer'])
        self.validate(optimizer)
        return optimizer

    def __repr__(self):
        repr_str = "SplatData: \n"
        repr_str += "means: {} \n".format(tuple(self._means.shape))
        repr_str += "sh0: {} \n".format(tuple(self._sh0.shape))
        repr_str += "shN: {} \n".format(tuple(self._shN.shape))
        repr_str += "scaling: {} \n".format(tuple(self._scaling.shape))
        repr_str += "rotation: {} \n".format(tuple(self._rotation.shape))
        repr_str += "opacity: {} \n".format(tuple(self._opacity.shape))
        repr_str += "active_sh_degree: {} / {} \n".format(self.active_sh_degree, self.max_sh_degree)
        return repr_str

    def __len__(self):
        return self.num_gaussians

    @property
    def num_gaussians(self):
        return self._means.shape[0] if self._means.ndim == 2 else 0

    @property
    def get_scaling(self):
        return self.scaling_activation(self._scaling)

    @property
    def get_rotation(self):
        return self.rotation_activation(self._rotation)

    @property
    def get_means(self):
        return self._means

    @property
    def get_shs(self):
        return torch.cat((self._sh0, self._shN), dim=1)

    @property
    def get_opacity(self):
        return self.opacity_activation(self._opacity)

    # raw tensors, handed to the rasterizer and the optimizer
    @property
    def means(self):
        return self._means

    @property
    def sh0(self):
        return self._sh0

    @property
    def shN(self):
        return self._shN

    @property
    def scaling_raw(self):
        return self._scaling

    @property
    def rotation_raw(self):
        return self._rotation

    @property
    def opacity_raw(self):
        return self._opacity

    @property
    def params(self):
        return {
            'means': self._means,
            'sh0': self._sh0,
            'shN': self._shN,
            'scaling': self._scaling,
            'rotation': self._rotation,
            'opacity': self._opacity,
        }

    def increment_sh_degree(self):
        if self.active_sh_degree < self.max_sh_degree:
            self.active_sh_degree += 1
            logger.info(f"Active SH degree raised to {self.active_sh_degree}")
            return True
        return False

    @classmethod
    def init_model_from_pointcloud(cls, params, scene_center, point_cloud, scene_scale=None, device='cpu'):
        """
        Seed the population from a point cloud: one Gaussian per point with
        the point colour as SH DC term, isotropic scale from the mean distance
        to the three nearest neighbours, identity rotation and opacity
        `params.init_opacity`.

        When `scene_scale` is not given it is taken as the median distance of
        the points to `scene_center`.
        """
        points = np.asarray(point_cloud.points, dtype=np.float32)
        if points.ndim != 2 or points.shape[0] == 0 or points.shape[1] != 3:
            raise ConfigurationError(f"Point cloud must be a non-empty (N, 3) array, got {points.shape}")
        colors = normalize_colors(point_cloud.colors)
        if colors.shape != points.shape:
            raise ConfigurationError(
                f"Point cloud colors {colors.shape} do not match positions {points.shape}")

        model = cls(params.sh_degree, device=device)
        device = model.device

        if scene_scale is None:
            center = np.asarray(scene_center, dtype=np.float32).reshape(1, 3)
            scene_scale = float(np.median(np.linalg.norm(points - center, axis=1)))
        model.scene_scale = max(float(scene_scale), 1e-6)

        fused_point_cloud = torch.tensor(points, dtype=torch.float32, device=device)
        fused_color = RGB2SH(torch.tensor(colors, dtype=torch.float32, device=device))
        n = fused_point_cloud.shape[0]

        features = torch.zeros((n, num_sh_bases(model.max_sh_degree), 3), dtype=torch.float32, device=device)
        features[:, 0, :] = fused_color

        logger.info(f'Number of points at initialisation: {n}')

        dist2 = np.clip(mean_knn_dist2(points, k=3), 1e-7, None)
        dist2 = torch.tensor(dist2, dtype=torch.float32, device=device)
        scales = torch.log(torch.sqrt(dist2))[..., None].repeat(1, 3)

        rots = torch.zeros((n, 4), dtype=torch.float32, device=device)
        rots[:, 0] = 1

        opacities = inverse_sigmoid(
            params.init_opacity * torch.ones((n, 1), dtype=torch.float32, device=device))

        model._set_tensors({
            'means': fused_point_cloud,
            'sh0': features[:, 0:1, :],
            'shN': features[:, 1:, :],
            'scaling': scales,
            'rotation': rots,
            'opacity': opacities,
        })
        model.max_radii2D = torch.zeros(n, device=device)
        model.reset_densification_info()
        return model

    def setup_optimizer(self, params):
        groups = [
            {'params': [self._means], 'lr': params.means_lr * self.scene_scale, "name": "means"},
            {'params': [self._sh0], 'lr': params.shs_lr, "name": "sh0"},
            {'params': [self._shN], 'lr': params.shs_lr / 20.0, "name": "shN"},
            {'params': [self._scaling], 'lr': params.scaling_lr, "name": "scaling"},
            {'params': [self._rotation], 'lr': params.rotation_lr, "name": "rotation"},
            {'params': [self._opacity], 'lr': params.opacity_lr, "name": "opacity"},
        ]

        for group in groups:
            logger.info(f"Parameter: {group['name']}, lr: {group['lr']}")

        optimizer = SplatAdam(groups, lr=0.0, eps=1e-15)
        self.means_scheduler = get_expon_lr_func(
            lr_init=params.means_lr * self.scene_scale,
            lr_final=params.means_lr_final * self.scene_scale,
            lr_delay_mult=params.means_lr_delay_mult,
            max_steps=params.iterations,
        )
        return optimizer

    def update_learning_rate(self, optimizer, iteration):
        ''' Learning rate scheduling per step '''
        if self.means_scheduler is None:
            return None
        lr = self.means_scheduler(iteration)
        optimizer.group('means')['lr'] = lr
        return lr

    def get_attribute_names(self):
        l = ['x', 'y', 'z', 'nx', 'ny', 'nz']
        # All channels except the 3 DC
        for i in range(self._sh0.shape[1] * self._sh0.shape[2]):
            l.append('f_dc_{}'.format(i))
        for i in range(self._shN.shape[1] * self._shN.shape[2]):
            l.append('f_rest_{}'.format(i))
        l.append('opacity')
        for i in range(self._scaling.shape[1]):
            l.append('scale_{}'.format(i))
        for i in range(self._rotation.shape[1]):
            l.append('rot_{}'.format(i))
        return l

    @torch.no_grad()
    def snapshot(self):
        ''' Detached CPU deep copy, safe to serialise while training goes on '''
        other = SplatData(self.max_sh_degree, device='cpu')
        other.active_sh_degree = self.active_sh_degree
        other.scene_scale = self.scene_scale
        other._set_tensors(
            {name: tensor.detach().cpu().clone() for name, tensor in self.params.items()},
            requires_grad=False,
        )
        other.max_radii2D = self.max_radii2D.detach().cpu().clone()
        other.densification_info = torch.zeros((other.num_gaussians, 2))
        return other

    @torch.no_grad()
    def save_ply(self, path):
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

        means = self._means.detach().cpu().numpy()
        normals = np.zeros_like(means)
        # PLY stores SH channel-major: (N, 3, K)
        f_dc = self._sh0.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        f_rest = self._shN.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        opacities = self._opacity.detach().cpu().numpy()
        scale = self._scaling.detach().cpu().numpy()
        rotation = self._rotation.detach().cpu().numpy()

        dtype_full = [(attribute, 'f4') for attribute in self.get_attribute_names()]

        elements = np.empty(means.shape[0], dtype=dtype_full)
        attributes = np.concatenate((means, normals, f_dc, f_rest, opacities, scale, rotation), axis=1)
        elements[:] = list(map(tuple, attributes))
        el = PlyElement.describe(elements, 'vertex')
        PlyData([el]).write(path)
        return path

    @classmethod
    def load_ply(cls, path, sh_degree=None, device='cpu'):
        if not os.path.exists(path):
            raise ConfigurationError(f"PLY file does not exist: {path}")
        plydata = PlyData.read(path)
        vertex = plydata.elements[0]
        names = [p.name for p in vertex.properties]

        def sorted_names(prefix):
            found = [n for n in names if n.startswith(prefix)]
            return sorted(found, key=lambda x: int(x.split('_')[-1]))

        for required in ('x', 'y', 'z', 'opacity', 'f_dc_0', 'f_dc_1', 'f_dc_2'):
            if required not in names:
                raise ConfigurationError(f"PLY file {path} has no '{required}' property")

        means = np.stack((np.asarray(vertex["x"]),
                          np.asarray(vertex["y"]),
                          np.asarray(vertex["z"])), axis=1)
        opacities = np.asarray(vertex["opacity"])[..., np.newaxis]
        n = means.shape[0]

        features_dc = np.zeros((n, 3, 1))
        features_dc[:, 0, 0] = np.asarray(vertex["f_dc_0"])
        features_dc[:, 1, 0] = np.asarray(vertex["f_dc_1"])
        features_dc[:, 2, 0] = np.asarray(vertex["f_dc_2"])

        extra_f_names = sorted_names("f_rest_")
        if len(extra_f_names) % 3 != 0:
            raise ConfigurationError(f"PLY file {path} has {len(extra_f_names)} f_rest properties")
        n_rest = len(extra_f_names) // 3
        file_degree = int(round(np.sqrt(n_rest + 1))) - 1
        if num_sh_bases(file_degree) - 1 != n_rest:
            raise ConfigurationError(f"PLY file {path}: {n_rest} SH rest coefficients per channel")
        if sh_degree is not None and sh_degree != file_degree:
            raise ConfigurationError(f"PLY file {path} holds SH degree {file_degree}, expected {sh_degree}")

        features_extra = np.zeros((n, len(extra_f_names)))
        for idx, attr_name in enumerate(extra_f_names):
            features_extra[:, idx] = np.asarray(vertex[attr_name])
        # Reshape (P,F*SH_coeffs) to (P, F, SH_coeffs except DC)
        features_extra = features_extra.reshape((n, 3, n_rest))

        scale_names = sorted_names("scale_")
        scales = np.zeros((n, len(scale_names)))
        for idx, attr_name in enumerate(scale_names):
            scales[:, idx] = np.asarray(vertex[attr_name])

        rot_names = sorted_names("rot")
        rots = np.zeros((n, len(rot_names)))
        for idx, attr_name in enumerate(rot_names):
            rots[:, idx] = np.asarray(vertex[attr_name])

        if scales.shape[1] != 3 or rots.shape[1] != 4:
            raise ConfigurationError(
                f"PLY file {path}: expected 3 scales and 4 rotations, got {scales.shape[1]} and {rots.shape[1]}")

        model = cls(file_degree, device=device)
        device = model.device

        def as_tensor(x):
            return torch.tensor(x, dtype=torch.float32, device=device)

        model._set_tensors({
            'means': as_tensor(means),
            'sh0': as_tensor(features_dc).transpose(1, 2).contiguous(),
            'shN': as_tensor(features_extra).transpose(1, 2).contiguous(),
            'scaling': as_tensor(scales),
            'rotation': as_tensor(rots),
            'opacity': as_tensor(opacities),
        })
        model.max_radii2D = torch.zeros(n, device=device)
        model.reset_densification_info()
        model.active_sh_degree = model.max_sh_degree
        model.validate()
        logger.info(f"Loaded {n} Gaussians from {path}")
        return model

    def _set_tensors(self, tensors, requires_grad=True):
        def wrap(t):
            if isinstance(t, nn.Parameter):
                return t
            return nn.Parameter(t.contiguous(), requires_grad=requires_grad)

        self._means = wrap(tensors['means'])
        self._sh0 = wrap(tensors['sh0'])
        self._shN = wrap(tensors['shN'])
        self._scaling = wrap(tensors['scaling'])
        self._rotation = wrap(tensors['rotation'])
        self._opacity = wrap(tensors['opacity'])

    def replace_parameters(self, tensors, max_radii2D=None):
        """
        Swap every per-primitive tensor in one go. `tensors` maps each name
        of PARAM_NAMES to its new tensor (usually the Parameters handed back
        by the optimizer after a resize). Statistics are reset to the new
        population size.
        """
        missing = [name for name in PARAM_NAMES if name not in tensors]
        if missing:
            raise InvariantViolation(f"replace_parameters is missing tensors: {missing}")
        lengths = {name: tensors[name].shape[0] for name in PARAM_NAMES}
        if len(set(lengths.values())) != 1:
            raise InvariantViolation(f"Per-primitive tensors disagree in length: {lengths}")

        self._set_tensors(tensors)
        n = self._means.shape[0]
        if max_radii2D is None:
            max_radii2D = torch.zeros(n, device=self._means.device)
        self.max_radii2D = max_radii2D
        self.reset_densification_info()

    def update_parameter(self, name, param):
        ''' Swap one tensor for another of the same shape, statistics untouched '''
        current = self.params[name]
        if param.shape != current.shape:
            raise InvariantViolation(
                f"Cannot replace '{name}' of shape {tuple(current.shape)} with {tuple(param.shape)}")
        tensors = self.params
        tensors[name] = param
        self._set_tensors(tensors)

    def reset_densification_info(self):
        self.densification_info = torch.zeros((self.num_gaussians, 2), dtype=torch.float32,
                                              device=self._means.device)

    def validate(self, optimizer=None):
        ''' Raise InvariantViolation if any per-primitive tensor or moment disagrees with N '''
        n = self.num_gaussians
        shapes = {name: tuple(t.shape) for name, t in self.params.items()}
        expected_tail = {
            'means': (3,),
            'sh0': (1, 3),
            'shN': (num_sh_bases(self.max_sh_degree) - 1, 3),
            'scaling': (3,),
            'rotation': (4,),
            'opacity': (1,),
        }
        for name, shape in shapes.items():
            if shape[0] != n or shape[1:] != expected_tail[name]:
                raise InvariantViolation(
                    f"Tensor '{name}' has shape {shape}, expected ({n}, {', '.join(map(str, expected_tail[name]))})")
        if tuple(self.densification_info.shape) != (n, 2):
            raise InvariantViolation(
                f"densification_info has shape {tuple(self.densification_info.shape)}, expected ({n}, 2)")
        if self.max_radii2D.shape[0] != n:
            raise InvariantViolation(f"max_radii2D has length {self.max_radii2D.shape[0]}, expected {n}")
        if not 0 <= self.active_sh_degree <= self.max_sh_degree:
            raise InvariantViolation(
                f"active_sh_degree {self.active_sh_degree} outside [0, {self.max_sh_degree}]")

        if optimizer is not None:
            for group in optimizer.param_groups:
                param = group['params'][0]
                if param is not self.params[group['name']]:
                    raise InvariantViolation(
                        f"Optimizer group '{group['name']}' does not hold the live parameter tensor")
                state = optimizer.state.get(param, {})
                for key in ('exp_avg', 'exp_avg_sq'):
                    if key in state and state[key].shape != param.shape:
                        raise InvariantViolation(
                            f"Optimizer moment '{key}' of '{group['name']}' has shape "
                            f"{tuple(state[key].shape)}, parameter has {tuple(param.shape)}")
