#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import torch
import torch.nn as nn

from .utils import l1_loss, ssim


class PhotometricLoss(nn.Module):
    """
    (1 - lambda_dssim) * L1 + lambda_dssim * (1 - SSIM), plus optional
    L1 penalties on the activated opacities and scales.
    """

    def __init__(
        self,
        lambda_dssim=0.2,
        opacity_reg=0.0,
        scale_reg=0.0,
    ):
        super(PhotometricLoss, self).__init__()
        self.lambda_dssim = lambda_dssim
        self.opacity_reg = opacity_reg
        self.scale_reg = scale_reg

    def forward(self, pred_img, gt_image, splats=None):
        loss_dict = {}
        extras_dict = {}

        pred_img = pred_img.unsqueeze(0) if pred_img.dim() == 3 else pred_img
        gt_image = gt_image.unsqueeze(0) if gt_image.dim() == 3 else gt_image
        gt_image = gt_image.to(pred_img)

        Ll1 = l1_loss(pred_img, gt_image)
        loss_dict['l1'] = (1.0 - self.lambda_dssim) * Ll1
        extras_dict['l1'] = Ll1.detach()

        if self.lambda_dssim > 0.0:
            ssim_val = ssim(pred_img, gt_image)
            loss_dict['ssim'] = self.lambda_dssim * (1.0 - ssim_val)
            extras_dict['ssim'] = ssim_val.detach()

        if splats is not None and splats.num_gaussians > 0:
            if self.opacity_reg > 0.0:
                loss_dict['opacity_reg'] = self.opacity_reg * torch.abs(splats.get_opacity).mean()
            if self.scale_reg > 0.0:
                loss_dict['scale_reg'] = self.scale_reg * torch.abs(splats.get_scaling).mean()

        loss = 0.0
        for k, v in loss_dict.items():
            loss += v

        return loss, loss_dict, extras_dict
