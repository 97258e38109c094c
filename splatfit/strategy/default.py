#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

from dataclasses import dataclass

import torch
from loguru import logger

from splatfit.errors import InvariantViolation
from splatfit.models.splat_data import PARAM_NAMES
from splatfit.utils.general import build_rotation, inverse_sigmoid


@dataclass
class DensifyReport:
    iteration: int
    n_before: int
    n_cloned: int = 0
    n_split: int = 0
    n_pruned: int = 0
    n_after: int = 0
    capped: bool = False
    out_of_memory: bool = False

    def __str__(self):
        s = (f"[iter {self.iteration}] densify: {self.n_before} -> {self.n_after} "
             f"(cloned {self.n_cloned}, split {self.n_split}, pruned {self.n_pruned})")
        if self.capped:
            s += " [capped]"
        if self.out_of_memory:
            s += " [out of memory, pruned only]"
        return s


class DefaultStrategy:
    """
    Adaptive density control: every `growth_interval` iterations inside
    [start_densify, stop_densify], Gaussians whose mean screen-space gradient
    reaches `grad_threshold` are cloned (small) or split in two (large),
    transparent ones are pruned, and every `reset_opacity` iterations the
    opacities are pulled down to `opacity_reset_value`.
    """

    def __init__(self, params):
        self.params = params

    def check_sanity(self, splats, optimizer):
        names = set(optimizer.group_names)
        if names != set(PARAM_NAMES):
            raise InvariantViolation(
                f"Optimizer groups {sorted(names)} do not match the Gaussian tensors {sorted(PARAM_NAMES)}")
        splats.validate(optimizer)

    @torch.no_grad()
    def update_state(self, splats, radii):
        ''' Track the largest screen radius of every visible Gaussian '''
        if radii.shape[0] != splats.num_gaussians:
            raise InvariantViolation(
                f"radii has length {radii.shape[0]}, population is {splats.num_gaussians}")
        visible = radii > 0
        splats.max_radii2D[visible] = torch.max(
            splats.max_radii2D[visible], radii[visible].to(splats.max_radii2D.dtype))

    def step_post_backward(self, splats, optimizer, iteration):
        p = self.params
        report = None
        if iteration > p.stop_densify:
            return report

        if iteration >= p.start_densify and iteration % p.growth_interval == 0:
            report = self.densify_and_prune(splats, optimizer, iteration)

        if iteration > 0 and p.reset_opacity > 0 and iteration % p.reset_opacity == 0:
            self.reset_opacity(splats, optimizer)
            logger.info(f"[iter {iteration}] opacities reset to {p.opacity_reset_value}")
        return report

    @torch.no_grad()
    def mean_grads(self, splats):
        info = splats.densification_info
        grads = info[:, 0] / info[:, 1]
        grads[grads.isnan()] = 0.0
        return grads

    @torch.no_grad()
    def prune_mask(self, splats, iteration=None):
        p = self.params
        prune = splats.get_opacity.reshape(-1) < p.min_opacity
        if p.max_screen_size > 0 and iteration is not None and iteration > p.reset_opacity:
            big_points_vs = splats.max_radii2D > p.max_screen_size
            big_points_ws = splats.get_scaling.max(dim=1).values > 0.1 * splats.scene_scale
            prune = prune | big_points_vs | big_points_ws
        return prune

    @torch.no_grad()
    def densify_and_prune(self, splats, optimizer, iteration=0):
        p = self.params
        n = splats.num_gaussians
        report = DensifyReport(iteration=iteration, n_before=n)
        if n == 0:
            return report

        grads = self.mean_grads(splats)
        prune = self.prune_mask(splats, iteration)
        opacity = splats.get_opacity.reshape(-1)

        if p.max_cap > 0 and n - int(prune.sum()) > p.max_cap:
            # too many survivors already, drop the most transparent ones
            n_extra = n - int(prune.sum()) - p.max_cap
            score = torch.where(prune, torch.full_like(opacity, float('inf')), opacity)
            prune[torch.topk(score, n_extra, largest=False).indices] = True
            report.capped = True

        candidates = (grads >= p.grad_threshold) & ~prune
        if p.max_cap > 0:
            budget = max(p.max_cap - (n - int(prune.sum())), 0)
            if int(candidates.sum()) > budget:
                order = torch.argsort(torch.where(candidates, grads, torch.full_like(grads, -1.0)),
                                      descending=True, stable=True)
                allowed = torch.zeros_like(candidates)
                allowed[order[:budget]] = True
                candidates = candidates & allowed
                report.capped = True

        max_scale = splats.get_scaling.max(dim=1).values
        size_threshold = p.percent_dense * splats.scene_scale
        clone = candidates & (max_scale <= size_threshold)
        split = candidates & (max_scale > size_threshold)

        try:
            extension = self._grow(splats, clone, split)
            keep = ~prune & ~split
            new_params = optimizer.rebuild(keep, extension)
        except torch.cuda.OutOfMemoryError:
            logger.warning(f"[iter {iteration}] out of memory while growing, applying pruning only")
            if torch.cuda.is_available():
                torch.cuda.empty_cache()
            report.out_of_memory = True
            clone = torch.zeros_like(clone)
            split = torch.zeros_like(split)
            keep = ~prune
            extension = None
            new_params = optimizer.prune(keep)

        n_ext = 0 if extension is None else extension['means'].shape[0]
        max_radii2D = torch.cat([
            splats.max_radii2D[keep],
            splats.max_radii2D.new_zeros(n_ext),
        ])
        splats.replace_parameters(new_params, max_radii2D=max_radii2D)
        splats.validate(optimizer)

        report.n_cloned = int(clone.sum())
        report.n_split = int(split.sum())
        report.n_pruned = int(prune.sum())
        report.n_after = splats.num_gaussians
        if p.max_cap > 0 and report.n_after > p.max_cap:
            raise InvariantViolation(f"Population {report.n_after} exceeds max_cap {p.max_cap}")
        logger.info(str(report))
        return report

    def _grow(self, splats, clone, split):
        ''' Rows appended by one densify step: clones first, then two samples per split Gaussian '''
        raw = {name: t.detach() for name, t in splats.params.items()}
        cloned = {name: t[clone] for name, t in raw.items()}

        N = 2
        stds = splats.get_scaling[split].repeat(N, 1)
        samples = torch.normal(mean=torch.zeros_like(stds), std=stds)
        rots = build_rotation(raw['rotation'][split]).repeat(N, 1, 1)
        split_rows = {
            'means': torch.bmm(rots, samples.unsqueeze(-1)).squeeze(-1) + raw['means'][split].repeat(N, 1),
            'scaling': splats.scaling_inverse_activation(
                splats.get_scaling[split].repeat(N, 1) / self.params.split_factor),
            'rotation': raw['rotation'][split].repeat(N, 1),
            'sh0': raw['sh0'][split].repeat(N, 1, 1),
            'shN': raw['shN'][split].repeat(N, 1, 1),
            'opacity': raw['opacity'][split].repeat(N, 1),
        }
        return {name: torch.cat([cloned[name], split_rows[name]], dim=0) for name in PARAM_NAMES}

    @torch.no_grad()
    def reset_opacity(self, splats, optimizer):
        value = self.params.opacity_reset_value
        opacity = splats.get_opacity
        opacities_new = inverse_sigmoid(torch.min(opacity, torch.ones_like(opacity) * value))
        optimizable_tensors = optimizer.replace_tensor(opacities_new, "opacity")
        splats.update_parameter("opacity", optimizable_tensors["opacity"])
