"""Tests for artifact publishing."""

import shutil

import pytest

from freqlab.build.artifacts import publish_artifacts, version_output_dir
from freqlab.errors import ArtifactCopyError


def _bundle(root, name, payload="binary"):
    bundle = root / name / "Contents"
    bundle.mkdir(parents=True)
    (bundle / "plugin.so").write_text(payload)
    return root / name


def test_version_output_dir_layout(tmp_path):
    """Test artifacts are grouped per project and version."""
    assert version_output_dir(tmp_path, "my-synth", 3) == tmp_path / "my-synth" / "v3"


def test_publish_copies_files_and_bundles(tmp_path):
    """Test files and bundle directories land under their own names."""
    build = tmp_path / "build"
    bundle = _bundle(build, "my_synth.vst3")
    clap = build / "my_synth.clap"
    clap.write_text("clap")

    published = publish_artifacts([bundle, clap], tmp_path / "out")

    assert published == [tmp_path / "out" / "my_synth.vst3", tmp_path / "out" / "my_synth.clap"]
    assert (tmp_path / "out" / "my_synth.vst3" / "Contents" / "plugin.so").read_text() == "binary"
    assert (tmp_path / "out" / "my_synth.clap").read_text() == "clap"
    assert not list((tmp_path / "out").glob(".*.tmp"))


def test_publish_replaces_previous_artifacts(tmp_path):
    """Test republishing overwrites an existing bundle completely."""
    dest = tmp_path / "out"
    publish_artifacts([_bundle(tmp_path / "first", "fx.vst3", "old")], dest)
    (dest / "fx.vst3" / "stale.txt").write_text("stale")

    publish_artifacts([_bundle(tmp_path / "second", "fx.vst3", "new")], dest)

    assert (dest / "fx.vst3" / "Contents" / "plugin.so").read_text() == "new"
    assert not (dest / "fx.vst3" / "stale.txt").exists()
    assert sorted(p.name for p in dest.iterdir()) == ["fx.vst3"]


def test_failed_copy_leaves_no_partial_artifacts(tmp_path):
    """Test a missing source aborts the publish without leftovers."""
    good = tmp_path / "good.clap"
    good.write_text("ok")

    with pytest.raises(ArtifactCopyError):
        publish_artifacts([good, tmp_path / "missing.clap"], tmp_path / "out")

    assert list((tmp_path / "out").iterdir()) == []


def test_copy_failing_inside_bundle_removes_partial_temp(tmp_path, mocker):
    """Test a bundle that fails halfway through copying leaves nothing behind."""
    bundle = _bundle(tmp_path / "build", "a.vst3")
    (bundle / "Contents" / "resources.bin").write_text("data")
    dest = tmp_path / "out"

    real_copyfile = shutil.copyfile
    calls = []

    def copyfile_then_fail(src, dst, *args, **kwargs):
        calls.append(src)
        if len(calls) == 2:
            raise OSError("disk full")
        return real_copyfile(src, dst, *args, **kwargs)

    mocker.patch("shutil.copyfile", side_effect=copyfile_then_fail)

    with pytest.raises(ArtifactCopyError):
        publish_artifacts([bundle], dest)

    assert len(calls) == 2
    assert list(dest.iterdir()) == []
