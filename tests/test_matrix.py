import pytest

from releaseci.dsl import job, sh
from releaseci.errors import ConfigurationError
from releaseci.matrix import DEFAULT_TARGET_ENV, expand, matrix, validate_targets
from releaseci.model import Step


def test_expand_one_step_per_target():
    step = Step(name="Release", run="cross build --target {target}", env={"KEEP": "1"})
    out = expand(step, ["x86_64-apple-darwin", "aarch64-apple-darwin"])
    assert [s.name for s in out] == ["Release [x86_64-apple-darwin]", "Release [aarch64-apple-darwin]"]
    assert out[0].env == {"KEEP": "1", DEFAULT_TARGET_ENV: "x86_64-apple-darwin"}
    assert out[1].run == "cross build --target aarch64-apple-darwin"
    assert [s.target for s in out] == ["x86_64-apple-darwin", "aarch64-apple-darwin"]
    # the template step is untouched
    assert step.env == {"KEEP": "1"} and step.target is None


def test_expand_custom_env_var():
    (out,) = expand(Step(name="s", run="true"), ["t"], env_var="TARGET")
    assert out.env == {"TARGET": "t"}


@pytest.mark.parametrize("targets", [[], ["a", "a"], [""], ["a", 3]])
def test_invalid_targets(targets):
    with pytest.raises(ConfigurationError):
        validate_targets(targets)


def test_empty_env_var_rejected():
    with pytest.raises(ConfigurationError):
        expand(Step(name="s", run="true"), ["a"], env_var="")


def test_job_level_matrix():
    jobs = matrix("target", ["a", "b"]).jobs(lambda t: job(f"release-{t}", sh("Release", "true", env={"T": t})))
    assert [j.name for j in jobs] == ["release-a", "release-b"]
    assert jobs[1].steps[0].env == {"T": "b"}
