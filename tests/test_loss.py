import pytest
import torch

from splatfit.losses.loss import PhotometricLoss
from splatfit.losses.utils import l1_loss, ssim


def test_identical_images_have_zero_loss():
    img = torch.rand(3, 16, 16)
    loss, loss_dict, extras = PhotometricLoss(lambda_dssim=0.2)(img, img.clone())
    assert loss.item() == pytest.approx(0.0, abs=1e-5)
    assert extras['ssim'].item() == pytest.approx(1.0, abs=1e-5)
    assert set(loss_dict) == {'l1', 'ssim'}


def test_l1_only_without_dssim():
    pred = torch.zeros(3, 8, 8)
    gt = torch.full((3, 8, 8), 0.25)
    loss, loss_dict, _ = PhotometricLoss(lambda_dssim=0.0)(pred, gt)
    assert loss.item() == pytest.approx(0.25)
    assert 'ssim' not in loss_dict


def test_masked_l1():
    pred = torch.zeros(1, 2, 2)
    gt = torch.tensor([[[1.0, 1.0], [0.0, 0.0]]])
    mask = torch.tensor([[[1.0, 0.0], [1.0, 0.0]]])
    assert l1_loss(pred, gt, mask).item() == pytest.approx(0.5)


def test_ssim_drops_with_noise():
    img = torch.rand(1, 3, 32, 32)
    noisy = (img + 0.3 * torch.randn_like(img)).clamp(0, 1)
    assert ssim(img, noisy).item() < ssim(img, img).item()


def test_regularisers_use_activated_values(random_scene):
    splats = random_scene(n=4)
    img = torch.rand(3, 8, 8)
    loss_fn = PhotometricLoss(lambda_dssim=0.0, opacity_reg=0.1, scale_reg=0.5)
    loss, loss_dict, _ = loss_fn(img, img, splats)
    assert loss_dict['opacity_reg'].item() == pytest.approx(0.1 * 0.6, rel=1e-5)
    assert loss_dict['scale_reg'].item() == pytest.approx(0.5 * splats.get_scaling.mean().item(), rel=1e-5)
    loss.backward()
    assert splats.opacity_raw.grad is not None
