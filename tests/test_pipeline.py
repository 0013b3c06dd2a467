import cv2
import pytest

from blockface.errors import ConfigurationError, ConsistencyError, FrameApplicationError
from blockface.io import load_stack_config
from blockface.pipeline import correct_frame_shifts, correct_stack
from blockface.resample import OpenCVResampler
from blockface.transforms import AffineTransform

from conftest import write_color, write_gray

I = AffineTransform.identity()
S = AffineTransform.from_translation(3.0, -2.0)


def _make_stack(input_dir, n=5):
    names = []
    for i in range(n):
        name = f"slice_{i:03d}.png"
        if i % 2:
            write_color(input_dir / name)
        else:
            write_gray(input_dir / name)
        names.append(name)
    return names


def _snapshot(directory):
    return sorted((p.name, p.stat().st_mtime_ns) for p in directory.iterdir())


def test_same_directory_rejected_before_touching_files(tmp_path, copy_resampler):
    raw = tmp_path / "raw"
    names = _make_stack(raw)
    before = _snapshot(raw)

    with pytest.raises(ConfigurationError):
        correct_frame_shifts(raw, names, [I] * 5, [], raw, resampler=copy_resampler)
    with pytest.raises(ConfigurationError):
        correct_frame_shifts(raw, names, [I] * 5, [], raw / "sub" / "..", resampler=copy_resampler)

    assert _snapshot(raw) == before
    assert copy_resampler.calls == []


def test_frame_transform_count_mismatch(tmp_path, copy_resampler):
    with pytest.raises(ConfigurationError):
        correct_frame_shifts(
            tmp_path / "raw", ["a.png", "b.png"], [I], [], tmp_path / "out", resampler=copy_resampler
        )
    assert not (tmp_path / "out").exists()


def test_consistency_error_aborts_before_output(tmp_path, copy_resampler):
    raw = tmp_path / "raw"
    names = _make_stack(raw)
    out = tmp_path / "out"
    pairwise = [I, I, S, S, I]

    with pytest.raises(ConsistencyError):
        correct_frame_shifts(raw, names, pairwise, [2], out, resampler=copy_resampler)
    assert not out.exists()
    assert copy_resampler.calls == []


def test_non_propagating_shift_only_resamples_its_frame(tmp_path, copy_resampler):
    raw = tmp_path / "raw"
    names = _make_stack(raw)
    out = tmp_path / "nested" / "out"

    report = correct_frame_shifts(
        raw, names, [I, I, S, I, I], [2], out, resampler=copy_resampler, max_workers=2
    )

    assert [name for name, _ in copy_resampler.calls] == ["slice_002.png"]
    assert copy_resampler.calls[0][1].allclose(S)
    assert report.resampled_indices == [2]
    assert report.failures == []
    assert [r.resampled for r in report.results] == [False, False, True, False, False]
    for name in names:
        assert cv2.imread(str(out / name), cv2.IMREAD_UNCHANGED).ndim == 2
    assert (out / "slice_000.png").read_bytes() == (raw / "slice_000.png").read_bytes()
    assert list(copy_resampler.tmp_dir.iterdir()) == []

    summary = report.to_dict()
    assert summary["n_frames"] == 5
    assert summary["n_resampled"] == 1
    assert summary["frames"][2]["identity"] is False
    assert summary["frames"][3]["identity"] is True


def test_propagating_shift_resamples_following_frames(tmp_path, copy_resampler):
    raw = tmp_path / "raw"
    names = _make_stack(raw)

    report = correct_frame_shifts(
        raw, names, [I, I, S, I, I], [], tmp_path / "out", resampler=copy_resampler
    )
    assert report.resampled_indices == [2, 3, 4]
    assert sorted(name for name, _ in copy_resampler.calls) == names[2:]


def test_frame_failures_are_reported_together(tmp_path, copy_resampler):
    raw = tmp_path / "raw"
    names = _make_stack(raw)
    (raw / names[1]).write_text("corrupt")
    (raw / names[3]).write_text("corrupt")
    out = tmp_path / "out"

    with pytest.raises(FrameApplicationError) as excinfo:
        correct_frame_shifts(raw, names, [I] * 5, [], out, resampler=copy_resampler)

    report = excinfo.value.report
    assert [r.index for r in report.failures] == [1, 3]
    assert "2 frame(s) failed" in str(excinfo.value)
    assert sorted(p.name for p in out.iterdir()) == [names[0], names[2], names[4]]


def test_duplicate_frame_names_rejected(tmp_path, copy_resampler):
    raw = tmp_path / "raw"
    names = _make_stack(raw, n=3)
    out = tmp_path / "out"

    with pytest.raises(ConfigurationError, match="slice_001.png"):
        correct_frame_shifts(
            raw, [names[0], names[1], names[1]], [I] * 3, [], out, resampler=copy_resampler
        )
    assert not out.exists()
    assert copy_resampler.calls == []


@pytest.mark.parametrize("index", [1.5, "2", True])
def test_non_integer_non_propagating_index_rejected(tmp_path, copy_resampler, index):
    raw = tmp_path / "raw"
    names = _make_stack(raw, n=3)
    out = tmp_path / "out"

    with pytest.raises(ConfigurationError):
        correct_frame_shifts(raw, names, [I] * 3, [index], out, resampler=copy_resampler)
    assert not out.exists()


def test_dry_run_touches_nothing(tmp_path, copy_resampler):
    raw = tmp_path / "raw"
    names = _make_stack(raw)
    out = tmp_path / "out"

    report = correct_frame_shifts(
        raw, names, [I, S, I, I, I], [1], out, resampler=copy_resampler, dry_run=True
    )
    assert report.resampled_indices == [1]
    assert report.results == []
    assert not out.exists()


def test_output_directory_cannot_be_created(tmp_path, copy_resampler):
    raw = tmp_path / "raw"
    names = _make_stack(raw, n=2)
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")

    with pytest.raises(ConfigurationError, match="Cannot create output directory"):
        correct_frame_shifts(raw, names, [I, I], [], blocker / "out", resampler=copy_resampler)


def test_correct_stack_from_manifest_with_opencv(tmp_path):
    raw = tmp_path / "raw"
    for i in range(4):
        write_gray(raw / f"bf_{i + 1}.png", shape=(20, 24))
    manifest = tmp_path / "stack.yaml"
    manifest.write_text(
        "stack:\n"
        "  input_dir: raw\n"
        "  output_dir: corrected\n"
        "  non_propagating: [1, 3]\n"
        "  transforms:\n"
        "    - [1, 0, 0, 0]\n"
        "    - [1, 0, 2, 0]\n"
        "    - [1, 0, 0, 0]\n"
        "    - [1, 0, 0, 1]\n"
    )
    config = load_stack_config(manifest)
    tmp_dir = tmp_path / "tmp"
    tmp_dir.mkdir()

    report = correct_stack(config, resampler=OpenCVResampler(tmp_dir=tmp_dir))

    assert report.resampled_indices == [1, 3]
    corrected = tmp_path / "corrected"
    assert sorted(p.name for p in corrected.iterdir()) == ["bf_1.png", "bf_2.png", "bf_3.png", "bf_4.png"]
    shifted = cv2.imread(str(corrected / "bf_2.png"), cv2.IMREAD_UNCHANGED)
    original = cv2.imread(str(raw / "bf_2.png"), cv2.IMREAD_UNCHANGED)
    assert (shifted[:, :-2] == original[:, 2:]).all()
    assert list(tmp_dir.iterdir()) == []


def test_correct_stack_rejects_unknown_resampler(tmp_path):
    write_gray(tmp_path / "raw" / "a.png")
    manifest = tmp_path / "stack.yaml"
    manifest.write_text("stack:\n  input_dir: raw\n  output_dir: out\n  resampler: magic\n")
    config = load_stack_config(manifest)
    with pytest.raises(ConfigurationError):
        correct_stack(config)
