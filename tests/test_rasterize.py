import numpy as np
import pytest
import torch

from splatfit.datasets.camera import CameraModel
from splatfit.errors import ConfigurationError
from splatfit.renderer.gs_renderer import (
    RenderRequest,
    composite_background,
    fast_render,
    render,
    render_request,
)
from splatfit.renderer.rasterization.autograd import (
    FastGSRasterize,
    RasterizeGaussians,
    RasterizeSettings,
    intersect,
)
from splatfit.renderer.rasterization.rasterize import rasterize_forward


def screen_gaussians(n=4, size=8, dtype=torch.float64, seed=2):
    g = torch.Generator().manual_seed(seed)
    means2d = torch.rand((n, 2), generator=g, dtype=dtype) * (size - 2) + 1.0
    var = torch.rand((n, 2), generator=g, dtype=dtype) * 3.0 + 1.0
    cov_xy = (torch.rand((n,), generator=g, dtype=dtype) - 0.5) * 0.8
    det = var[:, 0] * var[:, 1] - cov_xy * cov_xy
    conics = torch.stack([var[:, 1] / det, -cov_xy / det, var[:, 0] / det], dim=-1)
    colors = torch.rand((n, 3), generator=g, dtype=dtype)
    opacities = torch.rand((n,), generator=g, dtype=dtype) * 0.5 + 0.3
    depths = torch.rand((n,), generator=g, dtype=dtype) + 1.0
    radii = torch.full((n,), size, dtype=torch.int32)
    return means2d, conics, colors, opacities, depths, radii


def test_single_gaussian_matches_closed_form():
    means2d = torch.tensor([[4.5, 4.5]], dtype=torch.float64)
    conics = torch.tensor([[0.5, 0.0, 0.5]], dtype=torch.float64)
    colors = torch.tensor([[1.0, 0.5, 0.25]], dtype=torch.float64)
    opacities = torch.tensor([0.8], dtype=torch.float64)
    radii = torch.tensor([8], dtype=torch.int32)
    offsets, flatten_ids = intersect(means2d, radii, torch.ones(1, dtype=torch.float64), 8, 8, 4)
    image, alphas, final_Ts, n_contrib = rasterize_forward(
        means2d, conics, colors, opacities, 8, 8, 4, offsets, flatten_ids)

    assert image[4, 4].tolist() == pytest.approx([0.8, 0.4, 0.2])
    assert alphas[4, 4, 0].item() == pytest.approx(0.8)
    # one pixel away along x
    expected = 0.8 * np.exp(-0.25)
    assert alphas[4, 5, 0].item() == pytest.approx(expected)
    assert torch.allclose(final_Ts, 1.0 - alphas[..., 0])
    assert n_contrib[4, 4] == 1


def test_energy_bound(make_camera, random_scene):
    splats = random_scene(n=30)
    camera = make_camera()
    with torch.no_grad():
        out = render(splats, camera, bg_color=(1.0, 1.0, 1.0))
    assert torch.all(out["alpha"] >= 0.0) and torch.all(out["alpha"] <= 1.0)
    assert torch.all(out["render"] >= 0.0)
    assert torch.all(out["render"] <= 1.0 + 1e-5)


def test_termination_excludes_saturating_entry():
    # twenty opaque Gaussians stacked on one pixel
    n = 20
    means2d = torch.full((n, 2), 2.5, dtype=torch.float64)
    conics = torch.tensor([[1.0, 0.0, 1.0]] * n, dtype=torch.float64)
    colors = torch.ones((n, 3), dtype=torch.float64)
    opacities = torch.full((n,), 0.99, dtype=torch.float64)
    depths = torch.arange(n, dtype=torch.float64) + 1.0
    radii = torch.full((n,), 4, dtype=torch.int32)
    offsets, flatten_ids = intersect(means2d, radii, depths, 4, 4, 4)
    _, alphas, final_Ts, n_contrib = rasterize_forward(
        means2d, conics, colors, opacities, 4, 4, 4, offsets, flatten_ids)
    # 0.01 ** 2 = 1e-4 is not below the threshold, 0.01 ** 3 is
    assert n_contrib[2, 2] == 2
    assert final_Ts[2, 2].item() == pytest.approx(1e-4)
    assert alphas[2, 2, 0].item() == pytest.approx(1.0 - 1e-4)


def test_rasterize_gradcheck():
    means2d, conics, colors, opacities, depths, radii = screen_gaussians()
    offsets, flatten_ids = intersect(means2d, radii, depths, 8, 8, 4)
    inputs = tuple(t.clone().requires_grad_(True) for t in (means2d, conics, colors, opacities))

    def fn(means2d, conics, colors, opacities):
        return RasterizeGaussians.apply(means2d, conics, colors, opacities, 8, 8, 4,
                                        offsets, flatten_ids, None)

    assert torch.autograd.gradcheck(fn, inputs, eps=1e-6, atol=1e-5, rtol=1e-3)


def test_absgrad_bounds_gradient():
    means2d, conics, colors, opacities, depths, radii = screen_gaussians(n=6, seed=4)
    offsets, flatten_ids = intersect(means2d, radii, depths, 8, 8, 4)
    means2d.requires_grad_(True)
    absgrad = torch.zeros_like(means2d)
    image, _ = RasterizeGaussians.apply(means2d, conics, colors, opacities, 8, 8, 4,
                                        offsets, flatten_ids, absgrad)
    (image * torch.linspace(-1.0, 1.0, 8, dtype=torch.float64)[None, :, None]).sum().backward()
    assert torch.all(absgrad >= means2d.grad.abs() - 1e-12)
    assert absgrad.sum() > 0


def fast_inputs(splats):
    return tuple(t.detach().clone().requires_grad_(True) for t in (
        splats.means, splats.scaling_raw, splats.rotation_raw,
        splats.opacity_raw, splats.sh0, splats.shN))


def test_fast_rasterize_gradcheck(make_camera, make_splats):
    g = torch.Generator().manual_seed(7)
    n = 3
    means = (torch.rand((n, 3), generator=g, dtype=torch.float64) - 0.5) * 0.6
    means[:, 2] += 3.0
    rotation = torch.randn((n, 4), generator=g, dtype=torch.float64)
    rgb = torch.rand((n, 3), generator=g, dtype=torch.float64) * 0.6 + 0.2
    splats = make_splats(means, rgb=rgb, opacity=0.6, scale=0.4, rotation=rotation,
                         sh_degree=1, dtype=torch.float64)
    with torch.no_grad():
        splats.shN.normal_(0.0, 0.05, generator=g)
    splats.active_sh_degree = 1

    camera = make_camera(width=8, height=8, focal=10.0)
    settings = RasterizeSettings(
        viewmat=camera.world_view_transform.double(), K=camera.K.double(),
        camera_center=camera.camera_center.double(), width=8, height=8,
        active_sh_degree=1, tile_size=4)

    def fn(*params):
        image, alpha, _ = FastGSRasterize.apply(*params, None, settings)
        return image, alpha

    assert torch.autograd.gradcheck(fn, fast_inputs(splats), eps=1e-6, atol=1e-5, rtol=1e-3)


def test_fast_path_matches_composable_path(make_camera, random_scene):
    splats = random_scene(n=12, dtype=torch.float64, sh_degree=1)
    splats.active_sh_degree = 1
    camera = make_camera()

    out_ref = render(splats, camera, bg_color=None)
    out_ref["render"].square().sum().backward()
    ref_grads = {name: p.grad.clone() for name, p in splats.params.items()}
    viewspace_grad = out_ref["viewspace_points"].grad.clone()
    for p in splats.params.values():
        p.grad = None

    info = torch.zeros_like(splats.densification_info)
    out_fast = fast_render(splats, camera, densification_info=info)
    out_fast["render"].square().sum().backward()

    assert torch.allclose(out_fast["render"], out_ref["render"], atol=1e-10)
    assert torch.allclose(out_fast["alpha"], out_ref["alpha"], atol=1e-10)
    assert torch.equal(out_fast["radii"], out_ref["radii"])
    for name, p in splats.params.items():
        assert torch.allclose(p.grad, ref_grads[name], atol=1e-8), name

    visible = out_ref["visibility_filter"]
    expected = torch.linalg.norm(viewspace_grad * viewspace_grad.new_tensor([16.0, 16.0]), dim=-1)
    assert torch.allclose(info[:, 0].double(), expected * visible, atol=1e-4)
    assert torch.equal(info[:, 1], visible.float())


def test_densification_info_accumulates_over_views(make_camera, random_scene):
    splats = random_scene(n=8)
    splats.means.data[0, 2] = -5.0  # behind the camera
    camera = make_camera()
    ramp = torch.linspace(0.0, 1.0, 32)[None, None, :]
    for _ in range(3):
        out = fast_render(splats, camera)
        (out["render"] * ramp).sum().backward()
    info = splats.densification_info
    assert info[0].tolist() == [0.0, 0.0]
    assert torch.all(info[1:, 1] == 3.0)
    assert torch.all(info[1:, 0] > 0.0)


def test_background_compositing(make_camera, random_scene):
    splats = random_scene(n=10)
    camera = make_camera()
    bg = torch.tensor([0.2, 0.4, 0.6])
    with torch.no_grad():
        ref = render(splats, camera, bg_color=bg)
        fast = fast_render(splats, camera)
        composed = composite_background(fast["render"], fast["alpha"], bg)
    assert torch.allclose(composed, ref["render"], atol=1e-6)


def test_three_gaussians_on_black(make_camera, make_splats):
    camera = make_camera(width=32, height=32, focal=40.0)
    # projected centres land on the centres of pixels 8, 16 and 24 of row 16
    xs = [(p + 0.5 - 16.0) / 10.0 for p in (8, 16, 24)]
    means = [[x, 0.05, 4.0] for x in xs]
    rgb = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.2, 0.4, 0.8]]
    splats = make_splats(means, rgb=rgb, opacity=0.9999, scale=0.05)
    with torch.no_grad():
        image = render(splats, camera, bg_color=(0.0, 0.0, 0.0), antialiased=False)["render"]

    for p, color in zip((8, 16, 24), rgb):
        assert image[:, 16, p].tolist() == pytest.approx([0.99 * c for c in color], abs=0.02)
    assert image[:, 0, 0].tolist() == [0.0, 0.0, 0.0]
    assert image[:, 31, 31].tolist() == [0.0, 0.0, 0.0]


def test_empty_population(make_camera, make_splats):
    splats = make_splats(torch.zeros((0, 3)))
    camera = make_camera()
    out = fast_render(splats, camera)
    assert out["render"].shape == (3, 32, 32)
    assert torch.all(out["render"] == 0.0)
    out["render"].sum().backward()
    assert splats.means.grad.shape == (0, 3)

    with torch.no_grad():
        ref = render(splats, camera, bg_color=(1.0, 1.0, 1.0))
    assert torch.all(ref["render"] == 1.0)


def test_nothing_visible(make_camera, make_splats):
    splats = make_splats([[0.0, 0.0, -3.0], [0.1, 0.0, -4.0]])
    camera = make_camera()
    out = fast_render(splats, camera)
    assert torch.all(out["radii"] == 0)
    out["render"].sum().backward()
    for p in splats.params.values():
        assert torch.all(p.grad == 0)
    assert torch.all(splats.densification_info == 0)


def test_render_request_crop_and_depth(make_camera, random_scene):
    splats = random_scene(n=10)
    camera = make_camera()
    full = render_request(splats, RenderRequest(camera=camera, render_depth=True))
    assert full.num_visible > 0
    assert full.depth.shape == (1, 32, 32)
    covered = full.alpha[0] > 0.5
    # accumulated depth over alpha lies within the scene's depth range
    mean_depth = full.depth[0][covered] / full.alpha[0][covered]
    assert torch.all(mean_depth > 2.9) and torch.all(mean_depth < 4.1)

    empty = render_request(splats, RenderRequest(
        camera=camera, background=(0.0, 1.0, 0.0),
        crop_box=((10.0, 10.0, 10.0), (11.0, 11.0, 11.0))))
    assert empty.num_visible == 0
    assert torch.allclose(empty.image, torch.tensor([0.0, 1.0, 0.0])[:, None, None].expand(3, 32, 32))


def test_antialiased_render_dims_thin_gaussians(make_camera, make_splats):
    splats = make_splats([[0.0, 0.0, 4.0]], opacity=0.8, scale=0.005)
    camera = make_camera()
    with torch.no_grad():
        plain = render(splats, camera)["alpha"].sum()
        aa = render(splats, camera, antialiased=True)["alpha"].sum()
    assert aa < plain


def test_non_pinhole_camera_is_rejected(make_camera, random_scene):
    splats = random_scene(n=3)
    camera = make_camera(camera_model=CameraModel.FISHEYE)
    with pytest.raises(ConfigurationError):
        fast_render(splats, camera)
    with pytest.raises(ConfigurationError):
        render(splats, camera)
