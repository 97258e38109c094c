#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import math

import torch
from torch import nn

from splatfit.errors import InvariantViolation


@torch.no_grad()
def adam_step(param, exp_avg, exp_avg_sq, grad, lr, beta1, beta2, eps,
              bias_correction1, bias_correction2_sqrt):
    ''' One in-place Adam update of `param` and its two moments '''
    exp_avg.mul_(beta1).add_(grad, alpha=1 - beta1)
    exp_avg_sq.mul_(beta2).addcmul_(grad, grad, value=1 - beta2)
    denom = (exp_avg_sq.sqrt() / bias_correction2_sqrt).add_(eps)
    param.addcdiv_(exp_avg, denom, value=-lr / bias_correction1)


class SplatAdam(torch.optim.Optimizer):
    """
    Adam over named single-tensor groups (means, sh0, shN, scaling,
    rotation, opacity) whose leading dimension changes during training.

    The resize helpers return the new Parameters keyed by group name; the
    caller hands them to SplatData.replace_parameters so model and moments
    stay aligned.
    """

    def __init__(self, params, lr=1e-3, betas=(0.9, 0.999), eps=1e-15):
        if lr < 0.0:
            raise ValueError(f"Invalid learning rate: {lr}")
        if eps < 0.0:
            raise ValueError(f"Invalid epsilon value: {eps}")
        defaults = dict(lr=lr, betas=betas, eps=eps)
        super().__init__(params, defaults)
        for group in self.param_groups:
            if len(group['params']) != 1 or 'name' not in group:
                raise ValueError("SplatAdam expects named groups holding exactly one tensor")

    def group(self, name):
        for group in self.param_groups:
            if group['name'] == name:
                return group
        raise KeyError(name)

    @property
    def group_names(self):
        return [group['name'] for group in self.param_groups]

    @torch.no_grad()
    def step(self, closure=None):
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()

        for group in self.param_groups:
            param = group['params'][0]
            if param.grad is None:
                continue
            beta1, beta2 = group['betas']
            state = self.state[param]
            if len(state) == 0:
                state['step'] = 0
                state['exp_avg'] = torch.zeros_like(param, memory_format=torch.preserve_format)
                state['exp_avg_sq'] = torch.zeros_like(param, memory_format=torch.preserve_format)
            state['step'] += 1
            step = state['step']

            adam_step(
                param, state['exp_avg'], state['exp_avg_sq'], param.grad,
                lr=group['lr'], beta1=beta1, beta2=beta2, eps=group['eps'],
                bias_correction1=1 - beta1 ** step,
                bias_correction2_sqrt=math.sqrt(1 - beta2 ** step),
            )
        return loss

    def _swap(self, group, new_param, stored_state):
        if group['params'][0] in self.state:
            del self.state[group['params'][0]]
        group['params'][0] = new_param
        if stored_state is not None:
            self.state[new_param] = stored_state

    def replace_tensor(self, tensor, name):
        ''' Replace one group's tensor (same shape), zeroing its moments '''
        group = self.group(name)
        stored_state = self.state.get(group['params'][0], None)
        if stored_state is not None:
            stored_state["exp_avg"] = torch.zeros_like(tensor)
            stored_state["exp_avg_sq"] = torch.zeros_like(tensor)

        self._swap(group, nn.Parameter(tensor.requires_grad_(True)), stored_state)
        return {name: group['params'][0]}

    def prune(self, mask):
        ''' Keep the rows where `mask` is True, for every group and its moments '''
        for group in self.param_groups:
            if mask.shape[0] != group['params'][0].shape[0]:
                raise InvariantViolation(
                    f"mask has length {mask.shape[0]}, group '{group['name']}' has "
                    f"{group['params'][0].shape[0]} rows")
        optimizable_tensors = {}
        for group in self.param_groups:
            stored_state = self.state.get(group['params'][0], None)
            if stored_state is not None:
                stored_state["exp_avg"] = stored_state["exp_avg"][mask]
                stored_state["exp_avg_sq"] = stored_state["exp_avg_sq"][mask]

            new_param = nn.Parameter(group["params"][0][mask].requires_grad_(True))
            self._swap(group, new_param, stored_state)
            optimizable_tensors[group["name"]] = group["params"][0]
        return optimizable_tensors

    def rebuild(self, keep_mask, extension=None):
        """
        Prune and grow in one pass: rows where `keep_mask` is True survive,
        then the rows of `extension` (a dict keyed by group name) are appended.

        All new tensors are built before any group is touched, so an
        allocation failure leaves the optimizer unchanged.
        """
        staged = []
        n_new = None
        for group in self.param_groups:
            name = group['name']
            param = group['params'][0]
            if keep_mask.shape[0] != param.shape[0]:
                raise InvariantViolation(
                    f"keep_mask has length {keep_mask.shape[0]}, group '{name}' has {param.shape[0]} rows")
            stored_state = self.state.get(param, None)

            kept = param.detach()[keep_mask]
            ext = None
            if extension is not None:
                ext = extension[name].detach().to(dtype=param.dtype, device=param.device)
                if ext.shape[1:] != param.shape[1:]:
                    raise InvariantViolation(
                        f"Extension for '{name}' has shape {tuple(ext.shape)}, "
                        f"parameter rows are {tuple(param.shape[1:])}")
            new_data = kept if ext is None else torch.cat((kept, ext), dim=0)

            new_state = None
            if stored_state is not None:
                new_state = dict(stored_state)
                for key in ('exp_avg', 'exp_avg_sq'):
                    moment = stored_state[key][keep_mask]
                    if ext is not None:
                        moment = torch.cat((moment, torch.zeros_like(ext)), dim=0)
                    new_state[key] = moment

            if n_new is None:
                n_new = new_data.shape[0]
            elif new_data.shape[0] != n_new:
                raise InvariantViolation(
                    f"Rebuilt group '{name}' has {new_data.shape[0]} rows, expected {n_new}")
            staged.append((group, new_data, new_state))

        optimizable_tensors = {}
        for group, new_data, new_state in staged:
            new_param = nn.Parameter(new_data.contiguous().requires_grad_(True))
            self._swap(group, new_param, new_state)
            optimizable_tensors[group['name']] = new_param
        return optimizable_tensors
