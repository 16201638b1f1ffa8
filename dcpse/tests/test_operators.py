import logging

import pytest
import numpy as np
import jax.numpy as jnp

from dcpse import *


def make_line(n=21, spacing=0.1):
    cloud = GridCloud(shape=(n,), spacing=spacing)
    cloud.add_field("f", lambda x: x[0]**2)
    return cloud


def make_grid(n=9, spacing=0.1):
    cloud = GridCloud(shape=(n, n), spacing=spacing)
    cloud.add_field("f", lambda x: x[0]**2 + 3.*x[0]*x[1] - x[1]**2 + 2.*x[0])
    cloud.add_field("u", lambda x: jnp.array([x[0]**2, x[0]*x[1]]))
    return cloud


def interior_keys(cloud, width=2):
    inner = tuple(slice(width, n-width) for n in cloud.shape)
    return np.asarray(cloud.global_indices[inner]).flatten()


line = make_line()
d2x = Dcpse(line, (2,), 2, rcut=0.31)

grid = make_grid()
dx = Dcpse(grid, (1, 0), 2, rcut=0.26)


def test_second_derivative_1d():
    for key in range(3, 18):
        assert jnp.abs(d2x.apply(key, "f") - 2.) < 1e-6

    res = d2x.apply_all("f")
    assert res.shape == (21,)
    assert jnp.allclose(res[3:18], 2., atol=1e-6)


def test_apply_all_matches_apply():
    res = dx.apply_all("f")
    for key in [0, 10, 40, 80]:
        assert jnp.isclose(res[key], dx.apply(key, "f"))


def test_polynomial_reproduction_2d():
    x, y = grid.local_positions[:, 0], grid.local_positions[:, 1]
    keys = interior_keys(grid)

    expected = {(1, 0): 2.*x + 3.*y + 2.,
                (0, 1): 3.*x - 2.*y,
                (1, 1): jnp.full_like(x, 3.),
                (2, 0): jnp.full_like(x, 2.),
                (0, 2): jnp.full_like(x, -2.)}

    for signature, exact in expected.items():
        op = Dcpse(grid, signature, 2, rcut=0.26)
        res = op.apply_all("f")
        assert jnp.allclose(res[keys], exact[keys], atol=1e-5), signature


def test_convergence_2d():
    def max_error(n):
        h = 1. / (n-1)
        cloud = GridCloud(shape=(n, n), spacing=h)
        cloud.add_field("f", lambda x: jnp.sin(x[0]))
        op = Dcpse(cloud, (1, 0), 2, rcut=2.6*h)
        keys = interior_keys(cloud)
        exact = jnp.cos(cloud.local_positions[keys, 0])
        return jnp.max(jnp.abs(op.apply_all("f")[keys] - exact))

    coarse, fine = max_error(11), max_error(21)
    assert coarse < 1e-2
    assert fine < coarse / 3.


def test_sign_convention():
    assert [differential_sign(o) for o in range(5)] == [-1, 1, -1, 1, -1]
    assert d2x.sign == -1
    assert dx.sign == 1

    ## Constant fields have zero derivatives, whatever the order
    line.add_field("one", 1.)
    assert jnp.allclose(d2x.apply_all("one"), 0., atol=1e-8)


def test_third_and_fourth_derivatives():
    cloud = GridCloud(shape=(31,), spacing=0.05, origin=-0.75)
    cloud.add_field("p", lambda x: x[0]**4)
    keys = jnp.arange(6, 25)

    d3 = Dcpse(cloud, (3,), 2, rcut=0.26)
    assert jnp.allclose(d3.apply_all("p")[keys], 24.*cloud.local_positions[keys, 0], atol=1e-3)

    d4 = Dcpse(cloud, (4,), 2, rcut=0.26)
    assert jnp.allclose(d4.apply_all("p")[keys], 24., atol=1e-2)


def test_deterministic_update():
    kernels = dx.kernels
    offsets = dx.kernel_offsets
    dx.update()
    assert jnp.array_equal(kernels, dx.kernels)
    assert np.array_equal(offsets, dx.kernel_offsets)

    other = Dcpse(grid, (1, 0), 2, rcut=0.26)
    assert jnp.array_equal(kernels, other.kernels)

    dx.rebuild()
    assert jnp.array_equal(kernels, dx.kernels)


def test_flat_storage():
    assert dx.kernel_offsets.shape == (grid.N+1,)
    assert dx.kernel_offsets[0] == 0
    assert dx.kernel_offsets[-1] == dx.kernels.shape[0] == dx.neighbour_keys.shape[0]
    assert np.all(dx.neighbour_keys < grid.N_total)
    assert np.array_equal(dx.reference_keys, np.repeat(np.arange(grid.N), np.diff(dx.kernel_offsets)))

    for key in [0, 40, 80]:
        n = dx.num_neighbours(key)
        assert n == dx.kernel_offsets[key+1] - dx.kernel_offsets[key]
        assert dx.neighbour_index(key, 0) == key
        assert dx.support(key).keys[0] == key

        record = dx.record(key)
        assert record.offset == dx.kernel_offsets[key]
        assert record.count == n
        assert jnp.isclose(record.eps_inv_pow, 1./record.eps)


def test_introspection_matches_apply():
    f = grid.field("f")
    key = 40
    res = sum(dx.coefficient(key, j) * (f[dx.neighbour_index(key, j)] + dx.sign*f[key]) for j in range(dx.num_neighbours(key)))
    assert jnp.isclose(dx.epsilon_inv_prefactor(key) * res, dx.apply(key, "f"))


def test_out_of_range():
    with pytest.raises(IndexError):
        dx.apply(grid.N, "f")
    with pytest.raises(IndexError):
        dx.coefficient(0, dx.num_neighbours(0))
    with pytest.raises(IndexError):
        dx.neighbour_index(0, -1)


def test_invalid_arguments():
    with pytest.raises(ValueError):
        Dcpse(grid, (1,), 2, rcut=0.26)
    with pytest.raises(ValueError):
        Dcpse(grid, (1, 0), 2, rcut=0.26, support_mode="knn")
    with pytest.raises(ValueError):
        Dcpse(grid, (1, 0), 2, rcut=0.26, support_size_factor=0.)


def test_vector_fields():
    x, y = grid.local_positions[:, 0], grid.local_positions[:, 1]
    keys = interior_keys(grid)

    both = dx.apply_all("u")
    assert both.shape == (grid.N, 2)
    assert jnp.allclose(both[keys, 0], 2.*x[keys], atol=1e-6)
    assert jnp.allclose(both[keys, 1], y[keys], atol=1e-6)

    second = dx.apply_all("u", component=1)
    assert jnp.allclose(second, both[:, 1])

    view = VectorComponentView(grid.field("u"), 1)
    assert jnp.isclose(dx.apply(40, view), second[40])
    with pytest.raises(ValueError):
        dx.apply(40, view, component=0)
    with pytest.raises(ValueError):
        dx.apply(40, "f", component=0)


def test_compute_differential_operator():
    res = d2x.compute_differential_operator("f", "d2f")
    assert jnp.allclose(line.field("d2f"), res)


def test_stale_cache():
    cloud = make_line()
    op = Dcpse(cloud, (2,), 2, rcut=0.31)
    lazy = Dcpse(cloud, (2,), 2, rcut=0.31, check_epoch=False)

    cloud.map(cloud.local_positions + 0.05)
    with pytest.raises(StaleCacheError):
        op.apply(5, "f")
    with pytest.raises(StaleCacheError):
        op.apply_all("f")
    lazy.apply(5, "f")

    op.update()
    assert op.epoch == cloud.epoch
    cloud.set_field("f", lambda x: x[0]**2)
    assert jnp.abs(op.apply(5, "f") - 2.) < 1e-6


def test_tiny_cutoff_static(caplog):
    cloud = make_line(n=11)
    with caplog.at_level(logging.WARNING):
        op = Dcpse(cloud, (2,), 2, rcut=0.05)
    assert "fewer particles" in caplog.text

    assert all(r.retries == 0 for r in op.reports)
    assert np.all(np.diff(op.kernel_offsets) == 1)
    assert jnp.all(jnp.isfinite(op.kernels))
    assert jnp.all(jnp.isfinite(op.apply_all("f")))


@pytest.mark.parametrize("mode", [RADIUS, AT_LEAST_N])
def test_tiny_cutoff_adaptive(mode):
    cloud = make_line(n=11)
    op = Dcpse(cloud, (2,), 2, rcut=0.05, support_size_factor=0.5, support_mode=mode, max_retries=3)

    assert all(r.retries <= 3 for r in op.reports)
    assert jnp.all(jnp.isfinite(op.apply_all("f")))


def test_adaptive_growth():
    cloud = make_grid(n=7)
    op = Dcpse(cloud, (1, 0), 2, rcut=0.11, support_size_factor=0.5, support_mode=AT_LEAST_N, max_retries=4)

    for report in op.reports:
        assert report.cond <= op.cond_tol or report.retries == op.max_retries or report.support_size == cloud.N_total
        assert report.support_size >= len(op.basis) or report.retries == op.max_retries


def test_momenta(caplog):
    with caplog.at_level(logging.INFO, logger="dcpse"):
        mins, maxs = d2x.check_momenta()
    assert "MOMENTA" in caplog.text
    assert jnp.allclose(mins, d2x.rhs, atol=1e-6)
    assert jnp.allclose(maxs, d2x.rhs, atol=1e-6)


def test_draw_kernel():
    d2x.draw_kernel(10, "kernel")
    drawn = line.field("kernel")
    keys = d2x.support(10).keys
    assert jnp.isclose(jnp.sum(drawn), jnp.sum(d2x.kernels[d2x.kernel_offsets[10]:d2x.kernel_offsets[11]]))
    assert jnp.all(jnp.delete(drawn, jnp.asarray(keys)) == 0.)

    d2x.draw_kernel_nn(10, "nn")
    assert jnp.sum(line.field("nn")) == d2x.num_neighbours(10)


def test_periodic_ghosts():
    h = 0.02
    cloud = GridCloud(shape=(50,), spacing=h, periodic=True, ghost_width=3)
    cloud.add_field("s", lambda x: jnp.sin(2*jnp.pi*x[0]))
    op = Dcpse(cloud, (1,), 2, rcut=2.6*h)

    assert all(op.num_neighbours(k) == 5 for k in range(cloud.N))
    w0 = op.kernels[op.kernel_offsets[0]:op.kernel_offsets[1]]
    w25 = op.kernels[op.kernel_offsets[25]:op.kernel_offsets[26]]
    assert jnp.allclose(jnp.sort(w0), jnp.sort(w25), atol=1e-8)

    x = cloud.local_positions[:, 0]
    errors = jnp.abs(op.apply_all("s") - 2*jnp.pi*jnp.cos(2*jnp.pi*x))
    assert jnp.max(errors) < 0.05 * 2*jnp.pi
    assert jnp.max(errors) <= 1.01 * jnp.max(errors[10:40]) + 1e-10


def test_composite_operators():
    cloud = GridCloud(shape=(9, 9), spacing=0.1)
    cloud.add_field("f", lambda x: x[0]**2 + x[1]**2)
    cloud.add_field("u", lambda x: jnp.array([x[0]**2, x[0]*x[1]]))
    x, y = cloud.local_positions[:, 0], cloud.local_positions[:, 1]
    keys = interior_keys(cloud)

    grad = Gradient(cloud, 2, rcut=0.26)
    res = grad.apply_all("f")
    assert res.shape == (cloud.N, 2)
    assert jnp.allclose(res[keys], jnp.stack([2.*x, 2.*y], axis=-1)[keys], atol=1e-6)
    assert jnp.allclose(grad.apply(40, "f"), res[40])

    lap = Laplacian(cloud, 2, rcut=0.26)
    assert jnp.allclose(lap.apply_all("f")[keys], 4., atol=1e-5)

    div = Divergence(cloud, 2, rcut=0.26)
    assert jnp.allclose(div.apply_all("u")[keys], 3.*x[keys], atol=1e-6)
    assert jnp.isclose(div.apply(40, "u"), 3.*x[40], atol=1e-6)

    cloud.map(cloud.local_positions)
    with pytest.raises(StaleCacheError):
        lap.apply_all("f")
    lap.update()
    assert jnp.allclose(lap.apply_all("f")[keys], 4., atol=1e-5)


def test_zero_cutoff_adaptive(caplog):
    cloud = make_line(n=11)
    with caplog.at_level(logging.INFO, logger="dcpse"):
        op = Dcpse(cloud, (2,), 2, rcut=0., support_size_factor=0.5)
    assert "increasing the cutoff radius" in caplog.text

    assert all(r.support_size >= len(op.basis) for r in op.reports)
    assert jnp.allclose(op.apply_all("f"), 2., atol=1e-5)


def test_zero_cutoff_static():
    cloud = make_line(n=11)
    op = Dcpse(cloud, (2,), 2, rcut=0.)
    assert jnp.isclose(op.fallback_eps, 0.05)
    assert np.all(np.diff(op.kernel_offsets) == 1)
    assert jnp.all(jnp.isfinite(op.apply_all("f")))


def test_negative_cutoff():
    with pytest.raises(ValueError):
        Dcpse(make_line(n=11), (2,), 2, rcut=-1.)
    with pytest.raises(ValueError):
        Dcpse(make_line(n=11), (2,), 2, rcut=-1., support_size_factor=0.5)


def test_static_reports():
    assert len(dx.reports) == grid.N
    assert all(r.retries == 0 for r in dx.reports)
    assert all(r.support_size == dx.num_neighbours(k) for k, r in enumerate(dx.reports))

    center = dx.reports[40]
    V, _ = assemble_vandermonde(dx.support(40), dx.basis, grid, fallback=dx.fallback_eps)
    assert jnp.isclose(center.cond, condition_number(V))


def test_draw_kernel_component():
    dx.draw_kernel(40, "kernel_vec", component=1)
    drawn = grid.field("kernel_vec")
    assert drawn.shape == (grid.N_total, 2)
    assert jnp.all(drawn[:, 0] == 0.)
    assert jnp.isclose(jnp.sum(drawn[:, 1]), jnp.sum(dx.kernels[dx.kernel_offsets[40]:dx.kernel_offsets[41]]))
