import numpy as np
import pytest
import torch

from splatfit.errors import ConfigurationError, InvariantViolation
from splatfit.models.splat_data import SplatData
from splatfit.utils.graphics import BasicPointCloud


def grid_cloud(n_side=3, dtype=np.uint8):
    xs = np.arange(n_side, dtype=np.float32) * 0.1
    points = np.stack(np.meshgrid(xs, xs, xs, indexing='ij'), axis=-1).reshape(-1, 3)
    if dtype == np.uint8:
        colors = np.full(points.shape, 255, dtype=np.uint8)
        colors[:, 0] = 0
    else:
        colors = np.full(points.shape, 0.5, dtype=np.float32)
    return BasicPointCloud(points=points, colors=colors)


def test_init_from_pointcloud(opt_params):
    opt_params.sh_degree = 2
    splats = SplatData.init_model_from_pointcloud(opt_params, np.zeros(3), grid_cloud(), scene_scale=2.0)
    n = 27
    assert splats.num_gaussians == n
    assert splats.sh0.shape == (n, 1, 3)
    assert splats.shN.shape == (n, 8, 3)
    assert splats.active_sh_degree == 0
    assert splats.scene_scale == 2.0
    assert splats.densification_info.shape == (n, 2)
    assert torch.allclose(splats.get_opacity, torch.full((n, 1), opt_params.init_opacity))
    assert torch.allclose(splats.get_rotation, torch.tensor([1.0, 0.0, 0.0, 0.0]).expand(n, 4))
    # uint8 colours are normalised before the DC term is derived
    rgb = splats.sh0[:, 0, :] * 0.28209479177387814 + 0.5
    assert torch.allclose(rgb, torch.tensor([0.0, 1.0, 1.0]).expand(n, 3), atol=1e-5)
    # interior grid points have three neighbours at distance 0.1
    assert splats.get_scaling[13].tolist() == pytest.approx([0.1] * 3, rel=1e-4)
    splats.validate()


def test_scene_scale_defaults_to_median_distance(opt_params):
    splats = SplatData.init_model_from_pointcloud(opt_params, np.zeros(3), grid_cloud(dtype=np.float32))
    points = grid_cloud().points
    assert splats.scene_scale == pytest.approx(float(np.median(np.linalg.norm(points, axis=1))))


def test_init_rejects_bad_clouds(opt_params):
    with pytest.raises(ConfigurationError):
        SplatData.init_model_from_pointcloud(
            opt_params, np.zeros(3), BasicPointCloud(points=np.zeros((0, 3)), colors=np.zeros((0, 3))))
    with pytest.raises(ConfigurationError):
        SplatData.init_model_from_pointcloud(
            opt_params, np.zeros(3), BasicPointCloud(points=np.zeros((4, 3)), colors=np.zeros((3, 3))))


def test_attribute_names(make_splats):
    splats = make_splats([[0.0, 0.0, 1.0]], sh_degree=1)
    names = splats.get_attribute_names()
    assert names[:6] == ['x', 'y', 'z', 'nx', 'ny', 'nz']
    assert names[6:9] == ['f_dc_0', 'f_dc_1', 'f_dc_2']
    assert names[9:18] == [f'f_rest_{i}' for i in range(9)]
    assert names[18:] == ['opacity', 'scale_0', 'scale_1', 'scale_2', 'rot_0', 'rot_1', 'rot_2', 'rot_3']


def test_ply_round_trip(tmp_path, random_scene):
    splats = random_scene(n=7, sh_degree=2)
    with torch.no_grad():
        splats.shN.normal_()
    path = splats.save_ply(str(tmp_path / "nested" / "point_cloud.ply"))

    loaded = SplatData.load_ply(path)
    assert loaded.max_sh_degree == 2
    assert loaded.active_sh_degree == 2
    for name, tensor in splats.params.items():
        assert torch.allclose(loaded.params[name], tensor.detach(), atol=1e-6), name


def test_load_ply_degree_mismatch(tmp_path, random_scene):
    splats = random_scene(n=3, sh_degree=1)
    path = splats.save_ply(str(tmp_path / "pc.ply"))
    with pytest.raises(ConfigurationError):
        SplatData.load_ply(path, sh_degree=3)
    with pytest.raises(ConfigurationError):
        SplatData.load_ply(str(tmp_path / "missing.ply"))


def test_sh_degree_increments_up_to_max(make_splats):
    splats = make_splats([[0.0, 0.0, 1.0]], sh_degree=2)
    assert splats.increment_sh_degree()
    assert splats.increment_sh_degree()
    assert not splats.increment_sh_degree()
    assert splats.active_sh_degree == 2


def test_replace_parameters_checks_lengths(make_splats):
    splats = make_splats([[0.0, 0.0, 1.0], [0.0, 0.0, 2.0]])
    tensors = {name: t.detach().clone() for name, t in splats.params.items()}
    tensors['opacity'] = tensors['opacity'][:1]
    with pytest.raises(InvariantViolation):
        splats.replace_parameters(tensors)
    del tensors['opacity']
    with pytest.raises(InvariantViolation):
        splats.replace_parameters(tensors)
    assert splats.num_gaussians == 2


def test_validate_detects_stale_statistics(make_splats):
    splats = make_splats([[0.0, 0.0, 1.0], [0.0, 0.0, 2.0]])
    splats.validate()
    splats.densification_info = torch.zeros((3, 2))
    with pytest.raises(InvariantViolation):
        splats.validate()
    splats.reset_densification_info()
    splats.active_sh_degree = 5
    with pytest.raises(InvariantViolation):
        splats.validate()


def test_update_parameter_requires_same_shape(make_splats):
    splats = make_splats([[0.0, 0.0, 1.0]])
    with pytest.raises(InvariantViolation):
        splats.update_parameter('means', torch.zeros(2, 3))
    splats.update_parameter('means', torch.ones(1, 3))
    assert splats.get_means.tolist() == [[1.0, 1.0, 1.0]]


def test_snapshot_is_independent(random_scene):
    splats = random_scene(n=4)
    snap = splats.snapshot()
    with torch.no_grad():
        splats.means.add_(1.0)
    assert not torch.allclose(snap.means, splats.means.detach())
    assert not snap.means.requires_grad
    assert snap.num_gaussians == 4


def test_checkpoint_restore(opt_params, random_scene):
    splats = random_scene(n=5)
    optimizer = splats.setup_optimizer(opt_params)
    for param in splats.params.values():
        param.grad = torch.randn_like(param)
    optimizer.step()
    state = splats.state_dict(optimizer)

    restored = random_scene(n=1)
    new_optimizer = restored.restore(state, opt_params)
    assert restored.num_gaussians == 5
    assert torch.equal(restored.means.detach(), splats.means.detach())
    restored.validate(new_optimizer)
    assert new_optimizer.state[restored.means]['exp_avg'].shape == (5, 3)
