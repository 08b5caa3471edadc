import math

import pytest
import torch

from symreg.data import Image
from symreg.registration import (
    AffineTransform,
    CrossCorrelation,
    Evaluate,
    LocalCrossCorrelation,
    MeanSquared,
    MetricParams,
    OrientationMeanSquared,
    RigidTransform,
    get_metric,
)
from symreg.registration.metrics import MIN_SAMPLES
from conftest import make_header, blob_image


def context(transform, image1, image2, template=None, **kwargs):
    return MetricParams(transform, image1, image2, template or image1, **kwargs)


def test_identical_images_zero_cost(image1):
    evaluate = Evaluate(MeanSquared(), context(RigidTransform(), image1, image1))
    cost, gradient = evaluate(evaluate.init())
    assert cost == pytest.approx(0.0, abs=1e-12)
    assert float(gradient.abs().max()) == pytest.approx(0.0, abs=1e-10)


def test_cost_lower_at_true_transform(image1, image2, translation):
    transform = RigidTransform()
    evaluate = Evaluate(MeanSquared(), context(transform, image1, image2))
    identity_cost, _ = evaluate(transform.get_parameter_vector())

    full = torch.eye(4, dtype=torch.float64)
    full[:3, 3] = translation
    transform.set_transform(full)
    aligned_cost, _ = evaluate(transform.get_parameter_vector())
    assert aligned_cost < 0.01 * identity_cost


def test_gradient_matches_finite_differences(image1, image2):
    transform = AffineTransform()
    params = transform.get_parameter_vector()
    params[3] = 0.3
    params[0] = 1.02
    metric_params = context(transform, image1, image2)
    evaluate = Evaluate(MeanSquared(), metric_params)
    _, gradient = evaluate(params)

    h = 1e-5
    for index in (0, 3, 7, 11):
        step = torch.zeros_like(params)
        step[index] = h
        numeric = (evaluate.cost(params + step) - evaluate.cost(params - step)) / (2 * h)
        assert gradient[index].item() == pytest.approx(numeric, rel=5e-2, abs=1e-6)


def test_symmetric_sampling_uses_both_halves(image1, image2, translation):
    transform = RigidTransform()
    full = torch.eye(4, dtype=torch.float64)
    full[:3, 3] = translation
    transform.set_transform(full)

    symmetric = context(transform, image1, image2, symmetric=True)
    matrix1, matrix2 = symmetric.mappings(transform.get_parameter_vector())
    assert torch.allclose(matrix1[:3, 3], -translation / 2)
    assert torch.allclose(matrix2[:3, 3], translation / 2)

    asymmetric = context(transform, image1, image2, symmetric=False)
    matrix1, matrix2 = asymmetric.mappings(transform.get_parameter_vector())
    assert torch.allclose(matrix1, torch.eye(4, dtype=torch.float64))
    assert torch.allclose(matrix2[:3, 3], translation)


def test_sparsity_sample_counts(image1):
    n = image1.header.nvoxels
    assert context(RigidTransform(), image1, image1, sparsity=0.0).n_samples == n
    half = context(RigidTransform(), image1, image1, sparsity=0.5)
    assert half.n_samples == round(n * 0.5)
    assert context(RigidTransform(), image1, image1, sparsity=1.0).n_samples == MIN_SAMPLES


def test_sparse_subset_is_deterministic(image1):
    a = context(RigidTransform(), image1, image1, sparsity=0.7, seed=3)
    b = context(RigidTransform(), image1, image1, sparsity=0.7, seed=3)
    c = context(RigidTransform(), image1, image1, sparsity=0.7, seed=4)
    assert torch.equal(a.indices, b.indices)
    assert not torch.equal(a.indices, c.indices)


def test_small_grid_keeps_all_points():
    header = make_header(shape=(6, 6, 6))
    image = blob_image(header)
    assert context(RigidTransform(), image, image, sparsity=1.0).n_samples == 216


def test_masks_restrict_samples(image1, image2):
    transform = RigidTransform()
    mask = Image(torch.zeros(image1.shape, dtype=torch.bool), image1.header)
    mask.data[10:20, 10:20, 10:20] = True
    masked = context(transform, image1, image2, mask1=mask)
    samples = masked.sample(transform.get_parameter_vector())
    assert int(samples.valid.sum()) == 1000


def test_all_true_mask_equals_no_mask(image1, image2, full_mask):
    transform = RigidTransform()
    x = torch.tensor([0.5, -0.2, 0.3, 0.01, 0.02, -0.01], dtype=torch.float64)
    plain = Evaluate(MeanSquared(), context(transform, image1, image2))
    masked = Evaluate(MeanSquared(), context(transform, image1, image2, mask1=full_mask, mask2=full_mask))
    cost_a, grad_a = plain(x)
    cost_b, grad_b = masked(x)
    assert cost_a == pytest.approx(cost_b, rel=1e-12)
    assert torch.allclose(grad_a, grad_b, rtol=1e-10, atol=1e-14)


def test_no_overlap_gives_infinite_cost(image1, image2):
    transform = RigidTransform()
    far = torch.eye(4, dtype=torch.float64)
    far[0, 3] = 1000.0
    transform.set_transform(far)
    evaluate = Evaluate(MeanSquared(), context(transform, image1, image2))
    cost, gradient = evaluate(transform.get_parameter_vector())
    assert math.isinf(cost)
    assert float(gradient.abs().sum()) == 0.0


def test_cross_correlation_identical_is_minus_one(image1):
    evaluate = Evaluate(CrossCorrelation(), context(RigidTransform(), image1, image1))
    cost, _ = evaluate(evaluate.init())
    assert cost == pytest.approx(-1.0, abs=1e-9)


def test_cross_correlation_intensity_invariant(image1):
    scaled = image1.like(image1.data * 3.0 + 2.0)
    evaluate = Evaluate(CrossCorrelation(), context(RigidTransform(), image1, scaled))
    cost, _ = evaluate(evaluate.init())
    assert cost == pytest.approx(-1.0, abs=1e-6)


def test_local_cross_correlation_prefers_alignment(image1, image2, translation):
    transform = RigidTransform()
    metric_params = context(transform, image1, image2, kernel_extent=[2])
    evaluate = Evaluate(LocalCrossCorrelation(), metric_params)
    misaligned, _ = evaluate(transform.get_parameter_vector())

    full = torch.eye(4, dtype=torch.float64)
    full[:3, 3] = translation
    transform.set_transform(full)
    aligned, gradient = evaluate(transform.get_parameter_vector())
    assert aligned < misaligned
    assert aligned > -1.0 - 1e-9
    assert bool(torch.isfinite(gradient).all())


def test_kernel_extent_validation(image1):
    assert context(RigidTransform(), image1, image1, kernel_extent=[2]).kernel_extent == (2, 2, 2)
    assert context(RigidTransform(), image1, image1, kernel_extent=[1, 2]).kernel_extent == (1, 2, 2)
    assert context(RigidTransform(), image1, image1, kernel_extent=[1, 2, 3, 4]).kernel_extent == (1, 2, 3)
    with pytest.raises(ValueError):
        context(RigidTransform(), image1, image1, kernel_extent=[0])
    with pytest.raises(ValueError):
        context(RigidTransform(), image1, image1, kernel_extent=[])


def shifted(transform, shift):
    full = torch.eye(4, dtype=torch.float64)
    full[:3, 3] = torch.tensor(shift, dtype=torch.float64)
    transform.set_transform(full)
    return transform.get_parameter_vector()


def test_local_cross_correlation_minimum_at_true_shift(header):
    shift = (2.0, -1.0, 1.0)
    image1 = blob_image(header)
    image2 = blob_image(header, centre=shift)
    transform = RigidTransform()
    evaluate = Evaluate(LocalCrossCorrelation(), context(transform, image1, image2, kernel_extent=[2]))

    start = evaluate.cost(transform.get_parameter_vector())
    truth = evaluate.cost(shifted(transform, shift))
    assert truth == pytest.approx(-1.0, abs=1e-6)
    assert truth < start
    for axis in range(3):
        for step in (-0.2, 0.2):
            nearby = list(shift)
            nearby[axis] += step
            assert evaluate.cost(shifted(transform, nearby)) > truth


def test_local_cross_correlation_weights_fixed_per_context(image1, image2):
    transform = RigidTransform()
    metric_params = context(transform, image1, image2, kernel_extent=[1])
    evaluate = Evaluate(LocalCrossCorrelation(), metric_params)
    first = evaluate.cost(transform.get_parameter_vector())
    weights = metric_params.cache[LocalCrossCorrelation.name]
    evaluate.cost(shifted(transform, (1.0, 0.0, 0.0)))
    assert metric_params.cache[LocalCrossCorrelation.name] is weights
    assert evaluate.cost(shifted(transform, (0.0, 0.0, 0.0))) == pytest.approx(first, abs=1e-12)
    assert bool(((weights >= 0) & (weights <= 1)).all())


def oriented_image(header, amplitudes):
    """4-D image with one volume per direction, modulated by a blob"""
    blob = blob_image(header).data
    volumes = torch.stack([blob * a for a in amplitudes])
    return Image.from_volumes(volumes, header.with_shape(header.shape + (len(amplitudes),)))


def test_orientation_metric_requires_directions(small_header):
    image = oriented_image(small_header, [1.0, 0.5, 0.25])
    evaluate = Evaluate(OrientationMeanSquared(), context(RigidTransform(), image, image))
    with pytest.raises(ValueError, match="requires directions"):
        evaluate(evaluate.init())


def test_orientation_metric_identical_images(small_header):
    image = oriented_image(small_header, [1.0, 0.5, 0.25])
    evaluate = Evaluate(OrientationMeanSquared(), context(RigidTransform(), image, image))
    evaluate.set_directions(torch.eye(3) * 2.0)
    assert torch.allclose(torch.linalg.norm(evaluate.directions, dim=1), torch.ones(3, dtype=torch.float64))
    cost, _ = evaluate(evaluate.init())
    assert cost == pytest.approx(0.0, abs=1e-12)


def test_orientation_reorient_identity_and_swap():
    metric = OrientationMeanSquared()
    directions = torch.eye(3, dtype=torch.float64)
    values = torch.tensor([[1.0, 0.5, 0.25]], dtype=torch.float64)
    same = metric.reorient(values, torch.eye(3, dtype=torch.float64), directions)
    assert torch.allclose(same, values, atol=1e-3)

    # 90 degrees about z swaps the x and y amplitudes
    swap = torch.tensor([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]], dtype=torch.float64)
    swapped = metric.reorient(values, swap, directions)
    assert torch.allclose(swapped, torch.tensor([[0.5, 1.0, 0.25]], dtype=torch.float64), atol=1e-3)


def test_set_directions_validation(image1):
    evaluate = Evaluate(MeanSquared(), context(RigidTransform(), image1, image1))
    with pytest.raises(ValueError):
        evaluate.set_directions(torch.zeros(3, 2))
    with pytest.raises(ValueError, match="zero"):
        evaluate.set_directions(torch.tensor([[1.0, 0.0, 0.0], [0.0, 0.0, 0.0]]))


def test_volume_count_mismatch(small_header):
    single = blob_image(small_header)
    multi = oriented_image(small_header, [1.0, 1.0])
    with pytest.raises(ValueError, match="volumes"):
        context(RigidTransform(), single, multi)


def test_get_metric():
    assert isinstance(get_metric("mean_squared"), MeanSquared)
    assert isinstance(get_metric("Local_Cross_Correlation"), LocalCrossCorrelation)
    with pytest.raises(ValueError):
        get_metric("mutual_information")
