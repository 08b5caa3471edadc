import io
import logging

import pytest
import torch

import symreg.registration.linear as linear_module
from symreg.config import ConfigurationError, LinearConfig, RegistrationConfig
from symreg.data import Image
from symreg.registration import (
    AffineTransform,
    InitType,
    LinearRegistration,
    MeanSquared,
    OrientationMeanSquared,
    RigidTransform,
    get_metric,
)
from symreg.utils import LogContext
from symreg.visualization import parse_gradient_descent_log
from conftest import blob_image, make_header

EYE = torch.eye(4, dtype=torch.float64)


def make_registration(**kwargs):
    config = LinearConfig(**kwargs)
    return LinearRegistration(config)


def full_translation(transform):
    return transform.get_transform()[:3, 3]


def record_commits(monkeypatch, transform):
    """Wrap set_parameter_vector; check the half/half-inverse pair after each commit"""
    commits = []
    original = transform.set_parameter_vector

    def record(params):
        original(params)
        commits.append(transform.get_parameter_vector())
        product = transform.get_transform_half() @ transform.get_transform_half_inverse()
        assert torch.allclose(product, EYE, atol=1e-10)

    monkeypatch.setattr(transform, "set_parameter_vector", record)
    return commits


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------

def test_identical_images_give_identity(image1, quiet_logs):
    registration = make_registration(scale_factor=[1.0], max_iter=[50], init_type="mass")
    transform = registration.run(MeanSquared(), RigidTransform(), image1, image1)
    assert torch.allclose(transform.get_transform(), EYE, atol=1e-6)
    assert torch.allclose(transform.get_parameter_vector(), torch.zeros(6, dtype=torch.float64), atol=1e-6)


def test_symmetric_translation_recovery(image1, image2, translation, quiet_logs):
    registration = make_registration(
        scale_factor=[1.0], max_iter=[200], smooth_factor=0.0, init_type="geometric",
    )
    transform = registration.run(MeanSquared(), RigidTransform(), image1, image2)
    assert torch.allclose(full_translation(transform), translation, atol=1e-2)
    assert torch.allclose(transform.get_transform()[:3, :3], torch.eye(3, dtype=torch.float64), atol=5e-3)
    assert registration.level_reports[0].end_cost < registration.level_reports[0].start_cost


def test_symmetric_translation_recovery_from_mass_centres(image1, image2, translation, quiet_logs):
    registration = make_registration(
        scale_factor=[1.0], max_iter=[200], smooth_factor=0.0, init_type="mass",
    )
    transform = registration.run(MeanSquared(), RigidTransform(), image1, image2)
    assert torch.allclose(full_translation(transform), translation, atol=1e-2)
    assert torch.allclose(transform.get_transform()[:3, :3], torch.eye(3, dtype=torch.float64), atol=5e-3)


# whole-voxel shift: at the truth both symmetric samplings hit the same image values
VOXEL_SHIFT = (2.0, -1.0, 1.0)


@pytest.mark.parametrize("metric", ["mean_squared", "cross_correlation", "local_cross_correlation"])
def test_every_metric_recovers_translation(header, metric, quiet_logs):
    image1 = blob_image(header)
    image2 = blob_image(header, centre=VOXEL_SHIFT)
    registration = make_registration(
        scale_factor=[1.0], max_iter=[300], smooth_factor=0.0, init_type="geometric", kernel_extent=[2],
    )
    transform = registration.run(get_metric(metric), RigidTransform(), image1, image2)
    expected = torch.tensor(VOXEL_SHIFT, dtype=torch.float64)
    assert torch.allclose(full_translation(transform), expected, atol=1e-2)
    assert torch.allclose(transform.get_transform()[:3, :3], torch.eye(3, dtype=torch.float64), atol=5e-3)


def test_orientation_metric_recovers_translation(header, quiet_logs):
    amplitudes = (1.0, 0.6, 0.3)

    def oriented(centre):
        blob = blob_image(header, centre=centre).data
        volumes = torch.stack([blob * a for a in amplitudes])
        return Image.from_volumes(volumes, header.with_shape(header.shape + (len(amplitudes),)))

    registration = make_registration(
        scale_factor=[1.0], max_iter=[300], smooth_factor=0.0, init_type="geometric",
    )
    registration.set_directions(torch.eye(3, dtype=torch.float64))
    transform = registration.run(
        OrientationMeanSquared(), RigidTransform(), oriented((0.0, 0.0, 0.0)), oriented(VOXEL_SHIFT)
    )
    expected = torch.tensor(VOXEL_SHIFT, dtype=torch.float64)
    assert torch.allclose(full_translation(transform), expected, atol=1e-2)


def test_asymmetric_translation_recovery(image1, image2, translation, quiet_logs):
    registration = make_registration(
        scale_factor=[1.0], max_iter=[200], smooth_factor=0.0, init_type="geometric", mode="asymmetric",
    )
    transform = registration.run(MeanSquared(), RigidTransform(), image1, image2)
    assert registration.midway_header is None
    assert torch.allclose(full_translation(transform), translation, atol=1e-1)


def test_affine_translation_recovery(image1, image2, translation, quiet_logs):
    registration = make_registration(
        scale_factor=[0.5, 1.0], max_iter=[100, 200], smooth_factor=0.0, init_type="mass",
    )
    transform = registration.run(MeanSquared(), AffineTransform(), image1, image2)
    assert torch.allclose(full_translation(transform), translation, atol=1e-1)
    assert torch.allclose(transform.get_transform()[:3, :3], torch.eye(3, dtype=torch.float64), atol=2e-2)


@pytest.mark.parametrize("sparsity", [0.5, 1.0])
def test_sparse_sampling_still_converges(image1, image2, translation, sparsity, quiet_logs):
    registration = make_registration(
        scale_factor=[1.0], max_iter=[200], smooth_factor=0.0, init_type="geometric", sparsity=[sparsity],
    )
    transform = registration.run(MeanSquared(), RigidTransform(), image1, image2)
    assert torch.allclose(full_translation(transform), translation, atol=0.25)


# ---------------------------------------------------------------------------
# Level loop bookkeeping
# ---------------------------------------------------------------------------

def test_multi_level_commits_once_per_level(monkeypatch, small_header, quiet_logs):
    image1 = blob_image(small_header)
    image2 = blob_image(small_header, centre=(2.0, 1.0, -1.0))
    transform = RigidTransform()
    commits = record_commits(monkeypatch, transform)

    registration = make_registration(scale_factor=[0.5, 1.0], max_iter=[20, 20], init_type="none")
    registration.run(MeanSquared(), transform, image1, image2)

    assert len(commits) == 2
    first, second = registration.level_reports
    assert torch.equal(second.start_parameters, first.end_parameters)
    assert torch.equal(first.end_parameters, commits[0])
    assert torch.equal(second.end_parameters, commits[1])
    assert [r.scale_factor for r in registration.level_reports] == [0.5, 1.0]


def test_half_pair_exact_after_initialisation(image1, image2):
    transform = RigidTransform()
    registration = make_registration(scale_factor=[1.0], max_iter=[1])
    registration.run(MeanSquared(), transform, image1, image2)
    product = transform.get_transform_half() @ transform.get_transform_half_inverse()
    assert torch.allclose(product, EYE, atol=1e-10)
    assert registration.midway_header is not None


def test_deterministic(small_header, quiet_logs):
    image1 = blob_image(small_header)
    image2 = blob_image(small_header, centre=(1.0, -2.0, 1.5))

    def run():
        registration = make_registration(scale_factor=[0.5, 1.0], max_iter=[15], sparsity=[0.5], seed=7)
        return registration.run(MeanSquared(), RigidTransform(), image1, image2).get_parameter_vector()

    assert torch.allclose(run(), run(), atol=1e-12, rtol=0)


def test_all_true_mask_same_as_no_mask(small_header, quiet_logs):
    image1 = blob_image(small_header)
    image2 = blob_image(small_header, centre=(1.0, -2.0, 1.5))
    mask = Image(torch.ones(small_header.shape, dtype=torch.bool), small_header)

    plain = make_registration(scale_factor=[1.0], max_iter=[30]).run(MeanSquared(), RigidTransform(), image1, image2)
    masked = make_registration(scale_factor=[1.0], max_iter=[30]).run(
        MeanSquared(), RigidTransform(), image1, image2, mask1=mask, mask2=mask
    )
    assert torch.allclose(plain.get_parameter_vector(), masked.get_parameter_vector(), atol=1e-8)


def test_broadcast_singleton_same_as_expanded(small_header, quiet_logs):
    image1 = blob_image(small_header)
    image2 = blob_image(small_header, centre=(1.0, -2.0, 1.5))
    broadcast = make_registration(scale_factor=[0.5, 1.0], max_iter=[10], sparsity=[0.0])
    expanded = make_registration(scale_factor=[0.5, 1.0], max_iter=[10, 10], sparsity=[0.0, 0.0])
    a = broadcast.run(MeanSquared(), RigidTransform(), image1, image2).get_parameter_vector()
    b = expanded.run(MeanSquared(), RigidTransform(), image1, image2).get_parameter_vector()
    assert torch.equal(a, b)


# ---------------------------------------------------------------------------
# Validation happens before any image work
# ---------------------------------------------------------------------------

@pytest.fixture
def no_image_work(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("image work started before validation")

    monkeypatch.setattr(linear_module, "initialise", fail)
    monkeypatch.setattr(linear_module, "compute_minimum_average_header", fail)
    monkeypatch.setattr(linear_module.Image, "scratch", fail)


@pytest.mark.parametrize("scale", [0.0, 1.5, -0.2])
def test_invalid_scale_fails_before_image_work(image1, image2, no_image_work, scale):
    with pytest.raises(ConfigurationError, match="scale factor"):
        make_registration(scale_factor=[scale])

    registration = make_registration()
    registration.scale_factor = [scale]
    transform = RigidTransform()
    with pytest.raises(ConfigurationError, match="scale factor"):
        registration.run(MeanSquared(), transform, image1, image2)
    assert torch.equal(transform.get_parameter_vector(), torch.zeros(6, dtype=torch.float64))


def test_mismatched_level_arrays_fail_before_image_work(image1, image2, no_image_work):
    registration = make_registration(scale_factor=[0.5, 1.0])
    registration.set_max_iter([10, 10, 10])
    with pytest.raises(ConfigurationError, match="each multi-resolution level"):
        registration.run(MeanSquared(), RigidTransform(), image1, image2)

    registration = make_registration(scale_factor=[0.25, 0.5, 1.0])
    registration.set_sparsity([0.1, 0.2])
    with pytest.raises(ConfigurationError, match="each multi-resolution level"):
        registration.run(MeanSquared(), RigidTransform(), image1, image2)


def test_symmetric_mode_requires_half_decomposition(image1, image2, no_image_work):
    class WholeOnly(RigidTransform):
        supports_half = False

    with pytest.raises(ConfigurationError, match="half-transform"):
        make_registration().run(MeanSquared(), WholeOnly(), image1, image2)


def test_orientation_metric_requires_directions(image1, image2, no_image_work):
    with pytest.raises(ConfigurationError, match="requires directions"):
        make_registration().run(OrientationMeanSquared(), RigidTransform(), image1, image2)


def test_setters_validate_eagerly():
    registration = LinearRegistration()
    with pytest.raises(ConfigurationError, match="at least 1 voxel"):
        registration.set_extent(0)
    registration.set_extent([2, 3, 4])
    assert registration.kernel_extent == [2, 3, 4]
    registration.set_extent(2)
    assert registration.kernel_extent == [2]
    registration.set_extent([1, 2])
    assert registration.kernel_extent == [1, 2]

    with pytest.raises(ConfigurationError, match="number of iterations must be positive"):
        registration.set_max_iter([0])
    with pytest.raises(ConfigurationError, match="sparsity"):
        registration.set_sparsity([1.5])
    with pytest.raises(ConfigurationError):
        registration.set_smoothing_factor(-1.0)
    with pytest.raises(ConfigurationError):
        registration.set_init_type("random")
    with pytest.raises(ConfigurationError):
        registration.set_mode("sideways")
    with pytest.raises(ConfigurationError):
        registration.set_directions(torch.zeros(4, 2))

    registration.set_init_type(InitType.GEOMETRIC)
    assert registration.init_type == InitType.GEOMETRIC
    registration.set_grad_tolerance(1e-3)
    registration.set_step_tolerance(1e-4)
    assert (registration.grad_tolerance, registration.step_tolerance) == (1e-3, 1e-4)


def test_from_config():
    config = RegistrationConfig()
    config.linear.max_iter = [12]
    config.linear.mode = "asymmetric"
    registration = LinearRegistration.from_config(config)
    assert registration.max_iter == [12]
    assert registration.mode.value == "asymmetric"


# ---------------------------------------------------------------------------
# Regression safeguard, log stream, logging context
# ---------------------------------------------------------------------------

def gaussian(header, centre, sigma, amplitude):
    points = header.voxel_to_scanner(header.voxel_grid())
    centre = torch.tensor(centre, dtype=torch.float64)
    return amplitude * torch.exp(-0.5 * (((points - centre) / sigma) ** 2).sum(dim=-1))


@pytest.fixture
def misleading_pair():
    """
    Sharp peaks aligned at the origin, broad faint blobs 4 mm apart

    Heavy smoothing leaves only the broad blobs, which pull the coarse level
    towards x = -4; at full resolution moving there misaligns the peaks and
    costs more than it gains.
    """
    header = make_header(shape=(40, 40, 40))
    peak = gaussian(header, (0.0, 0.0, 0.0), 1.0, 3.0)
    image1 = Image((peak + gaussian(header, (0.0, 0.0, 0.0), 8.0, 0.3)).to(torch.float32), header)
    image2 = Image((peak + gaussian(header, (-4.0, 0.0, 0.0), 8.0, 0.3)).to(torch.float32), header)
    return image1, image2


def coarse_registration(revert):
    registration = make_registration(
        scale_factor=[0.25], max_iter=[100], smooth_factor=4.0, init_type="none",
    )
    registration.set_revert_on_regression(revert)
    return registration


def test_coarse_level_moves_without_safeguard(misleading_pair, quiet_logs):
    registration = coarse_registration(revert=False)
    transform = registration.run(MeanSquared(), RigidTransform(), *misleading_pair)
    report = registration.level_reports[0]
    assert not report.reverted
    assert report.reference_start_cost is None and report.reference_end_cost is None
    assert float(full_translation(transform)[0]) < -1.0


def test_revert_on_regression_keeps_previous_parameters(misleading_pair, quiet_logs):
    registration = coarse_registration(revert=True)
    transform = registration.run(MeanSquared(), RigidTransform(), *misleading_pair)
    report = registration.level_reports[0]
    assert report.reverted
    assert report.reference_end_cost > report.reference_start_cost
    assert report.end_cost < report.start_cost
    assert torch.equal(transform.get_parameter_vector(), torch.zeros(6, dtype=torch.float64))
    assert torch.equal(report.end_parameters, report.start_parameters)


def test_revert_on_regression_accepts_improving_levels(small_header, quiet_logs):
    image1 = blob_image(small_header)
    image2 = blob_image(small_header, centre=(2.0, -2.0, 2.0))
    registration = make_registration(
        scale_factor=[0.5, 1.0], max_iter=[50], smooth_factor=0.0, init_type="geometric",
    )
    registration.set_revert_on_regression(True)
    transform = registration.run(MeanSquared(), RigidTransform(), image1, image2)

    assert not any(r.reverted for r in registration.level_reports)
    for report in registration.level_reports:
        assert report.reference_end_cost <= report.reference_start_cost
    assert torch.allclose(full_translation(transform), torch.tensor([2.0, -2.0, 2.0], dtype=torch.float64), atol=0.2)


class CapturingRegistration(LinearRegistration):
    def _create_preparation(self, image1, image2, transform):
        self.prepared = (image1, image2)
        return super()._create_preparation(image1, image2, transform)


def test_images_moved_to_configured_device(small_header, quiet_logs):
    image1 = blob_image(small_header)
    image2 = blob_image(small_header, centre=(1.0, 0.0, 0.0))
    config = LinearConfig(scale_factor=[1.0], max_iter=[2])

    registration = CapturingRegistration(config, device=torch.device("cpu"))
    registration.run(MeanSquared(), RigidTransform(), image1, image2)
    moved1, moved2 = registration.prepared
    assert moved1 is not image1 and moved2 is not image2
    assert moved1.device.type == moved2.device.type == "cpu"
    assert torch.equal(moved1.data, image1.data)

    registration = CapturingRegistration(config)
    registration.run(MeanSquared(), RigidTransform(), image1, image2)
    assert registration.prepared[0] is image1


@pytest.mark.parametrize("setting", [
    {"smooth_factor": float("nan")},
    {"grad_tolerance": float("nan")},
    {"step_tolerance": float("inf")},
    {"midway_resolution": float("nan")},
    {"kernel_extent": [float("nan")]},
])
def test_non_finite_settings_rejected(setting):
    with pytest.raises(ConfigurationError):
        LinearRegistration(LinearConfig(**setting))


def test_log_stream_separates_levels(small_header, quiet_logs):
    image1 = blob_image(small_header)
    image2 = blob_image(small_header, centre=(1.0, 0.0, 0.0))
    stream = io.StringIO()
    registration = make_registration(scale_factor=[0.5, 1.0], max_iter=[5])
    registration.set_gradient_descent_log_stream(stream)
    registration.run(MeanSquared(), RigidTransform(), image1, image2)

    text = stream.getvalue()
    assert text.count("\n\n\n") == 2
    assert text.endswith("\n\n\n")
    history = parse_gradient_descent_log(text)
    assert list(history) == ["Level 1", "Level 2"]
    assert history["Level 1"].shape[1] == 4 + 6


def test_filter_logging_latched_during_preparation(small_header, caplog):
    image1 = blob_image(small_header)
    image2 = blob_image(small_header, centre=(1.0, 0.0, 0.0))
    context = LogContext(logging.getLogger("SYMREG.test_latch"))
    registration = LinearRegistration(
        LinearConfig(scale_factor=[0.5, 1.0], max_iter=[2], sparsity=[0.0, 0.3], smooth_factor=1.0),
        log_context=context,
    )
    with caplog.at_level(logging.INFO, logger="SYMREG"):
        registration.run(MeanSquared(), RigidTransform(), image1, image2)

    messages = [r.getMessage() for r in caplog.records if r.name == "SYMREG.test_latch"]
    assert "linear stage 1/2: scale factor 0.5" in messages
    assert "linear stage 2/2: scale factor 1, sparsity 0.3" in messages
    assert not [r for r in caplog.records if r.name == "SYMREG.test_latch.filters"]
    assert context.logger.level == logging.NOTSET
