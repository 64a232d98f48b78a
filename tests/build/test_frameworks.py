"""Tests for build plan rendering."""

from freqlab.build.frameworks import BuildPlan, new_build_suffix, render
from freqlab.config.settings import default_frameworks


def test_render_leaves_unknown_placeholders():
    """Test unknown placeholders survive rendering."""
    assert render("{package}-{unknown}", {"package": "my_synth"}) == "my_synth-{unknown}"


def test_build_suffix_is_numeric_and_bounded():
    """Test the suffix fits the native class-name scheme."""
    suffix = new_build_suffix()

    assert suffix.isdigit()
    assert int(suffix) < 100_000_000


def test_plan_renders_steps(project, fake_framework):
    """Test step arguments and env are rendered for the project."""
    plan = BuildPlan(fake_framework, project, build_suffix="12345")

    step = plan.steps[0]
    assert step.arguments[-1] == "my_synth"
    assert step.env == {"FAKE_BUILD_SUFFIX": "12345"}
    assert plan.artifact_patterns == ["out/my_synth.vst3"]


def test_nih_plug_plan_uses_bundler_and_formats(project):
    """Test the default nih-plug plan for explicit formats."""
    framework = default_frameworks()["nih-plug"]
    plan = BuildPlan(framework, project, formats=["CLAP"], build_suffix="7")

    assert plan.formats == ["clap"]
    commands = [[step.command, *step.arguments] for step in plan.steps]
    assert any("my_synth" in " ".join(command) for command in commands)
    assert all(pattern.endswith(".clap") for pattern in plan.artifact_patterns)


def test_find_artifacts_reports_bundles_once(project, fake_framework, tmp_path):
    """Test files inside a matched bundle are not reported separately."""
    fake_framework.artifact_patterns["vst3"] = ["out/*.vst3", "out/**/*.so"]
    plan = BuildPlan(fake_framework, project)
    bundle = tmp_path / "out" / "my_synth.vst3" / "Contents"
    bundle.mkdir(parents=True)
    (bundle / "plugin.so").write_text("x")

    assert plan.find_artifacts(tmp_path) == [tmp_path / "out" / "my_synth.vst3"]


def test_find_artifacts_without_matches(project, fake_framework, tmp_path):
    """Test an empty build directory has no artifacts."""
    assert BuildPlan(fake_framework, project).find_artifacts(tmp_path) == []
