import textwrap

import pytest
import yaml

from releaseci.config import find_workflow_files, load_settings, load_workflow, parse_workflow, validate_workflow
from releaseci.dsl import job, secret, sh, tool, wf
from releaseci.errors import ConfigurationError
from releaseci.model import CargoInstall, CommandInstall, Preinstalled, RustupInstall

RELEASE_YML = textwrap.dedent(
    """
    name: release
    on:
      push:
        tags:
          - "*"
    tools:
      - name: rust
        version: stable
        install:
          method: rustup
          override: true
      - name: cargo-release
        install: cargo
      - name: cross
        version: "0.20"
        install: {method: cargo, locked: true}
    secrets:
      CARGO_REGISTRY_TOKEN:
        from_env: CRATES_IO_TOKEN
      GITHUB_TOKEN:
      EXTRA: EXTRA_SOURCE
    jobs:
      release:
        steps:
          - kind: checkout
          - name: Release
            run: cargo release --execute --verbose
            secrets: [CARGO_REGISTRY_TOKEN, GITHUB_TOKEN]
            targets: [x86_64-apple-darwin]
            target_env: CROSS_BUILD_TARGET
    """
)


def parse(text):
    return parse_workflow(yaml.safe_load(textwrap.dedent(text)))


def test_full_release_workflow():
    w = parse(RELEASE_YML)
    assert w.trigger.event == "tag" and w.trigger.patterns == ("*",)
    assert [t.install for t in w.tools] == [
        RustupInstall(override=True),
        CargoInstall(),
        CargoInstall(locked=True),
    ]
    assert w.tools[2].version == "0.20"
    assert [(s.name, s.source) for s in w.secrets] == [
        ("CARGO_REGISTRY_TOKEN", "CRATES_IO_TOKEN"),
        ("GITHUB_TOKEN", "GITHUB_TOKEN"),
        ("EXTRA", "EXTRA_SOURCE"),
    ]
    checkout, release = w.jobs[0].steps
    assert checkout.kind == "checkout" and checkout.name == "Checkout"
    assert release.name == "Release [x86_64-apple-darwin]"
    assert release.env == {"CROSS_BUILD_TARGET": "x86_64-apple-darwin"}
    assert release.secrets == ("CARGO_REGISTRY_TOKEN", "GITHUB_TOKEN")


def test_defaults():
    w = parse(
        """
        jobs:
          release:
            steps:
              - name: Release
                run: "true"
        """
    )
    assert w.name == "release"
    assert w.trigger.patterns == ("*",)
    assert w.tools == [] and w.secrets == []
    step = w.jobs[0].steps[0]
    assert step.kind == "shell" and step.retries == 0 and not step.continue_on_error


def test_branch_trigger_and_tool_default():
    w = parse(
        """
        trigger:
          branches: main
        tools:
          - name: cargo
        jobs:
          j:
            steps: [{name: s, run: "true", env: {N: 4}}]
        """
    )
    assert w.trigger.event == "branch" and w.trigger.patterns == ("main",)
    assert w.tools[0].install == Preinstalled()
    assert w.jobs[0].steps[0].env == {"N": "4"}


@pytest.mark.parametrize(
    "text,fragment",
    [
        ("jobs: {}", "jobs"),
        ("jobs: {j: {steps: []}}", "steps"),
        ("jobs: {j: {steps: [{name: s}]}}", "run"),
        ("jobs: {j: {steps: [{name: s, run: x, bogus: 1}]}}", "bogus"),
        ("jobs: {j: {steps: [{kind: docker, name: s}]}}", "kind"),
        ("jobs: {j: {steps: [{name: s, run: x, retries: -1}]}}", "retries"),
        ("jobs: {j: {steps: [{name: s, run: x, timeout: 0}]}}", "timeout"),
        ("tools: [{name: t, install: brew}]\njobs: {j: {steps: [{name: s, run: x}]}}", "install"),
        ("trigger: {tags: ['*'], branches: [main]}\njobs: {j: {steps: [{name: s, run: x}]}}", "exactly one"),
    ],
)
def test_schema_errors(text, fragment):
    with pytest.raises(ConfigurationError) as exc:
        parse(text)
    assert fragment in str(exc.value)


@pytest.mark.parametrize(
    "text,fragment",
    [
        ("on: {tags: ['v[0-9']}\njobs: {j: {steps: [{name: s, run: x}]}}", "unterminated"),
        ("jobs: {j: {steps: [{name: s, run: x, targets: []}]}}", "empty"),
        ("jobs: {j: {steps: [{name: s, run: x, targets: [a, a]}]}}", "duplicate target"),
        ("jobs: {j: {steps: [{name: s, run: x, secrets: [T]}]}}", "undeclared secret"),
        ("jobs: {j: {steps: [{name: s, run: x}, {name: s, run: y}]}}", "duplicate step"),
        ("jobs: {j: {needs: [k], steps: [{name: s, run: x}]}}", "missing job"),
        ("jobs: {j: {requires: [cross], steps: [{name: s, run: x}]}}", "undeclared tool"),
    ],
)
def test_semantic_errors(text, fragment):
    with pytest.raises(ConfigurationError) as exc:
        parse(text)
    assert fragment in str(exc.value)


def test_not_a_mapping():
    with pytest.raises(ConfigurationError, match="mapping"):
        parse_workflow(["jobs"])


def test_validate_python_workflow():
    ok = wf(job("j", sh("s", "true", secrets=["T"])), secrets=[secret("T")], tools=[tool("cargo")])
    assert validate_workflow(ok) is ok
    with pytest.raises(ConfigurationError, match="duplicate tool"):
        validate_workflow(wf(job("j", sh("s", "true")), tools=[tool("a"), tool("a")]))
    with pytest.raises(ConfigurationError, match="no jobs"):
        validate_workflow(wf())


def test_load_yaml_file(tmp_path):
    path = tmp_path / "releaseci.yml"
    path.write_text(RELEASE_YML)
    assert load_workflow(path).name == "release"

    bad = tmp_path / "bad.yml"
    bad.write_text("jobs: [unclosed")
    with pytest.raises(ConfigurationError, match="invalid YAML"):
        load_workflow(bad)


def test_load_python_file(tmp_path):
    path = tmp_path / "release_workflow.py"
    path.write_text(
        textwrap.dedent(
            """
            from releaseci import wf, job, sh, tool, on_tag

            def workflow():
                return wf(job("release", sh("Release", "true")), on=on_tag("v*"),
                          tools=[tool("setup", install="command", command="echo {name}")])
            """
        )
    )
    w = load_workflow(path)
    assert w.trigger.patterns == ("v*",)
    assert w.tools[0].install == CommandInstall(command="echo {name}")

    empty = tmp_path / "empty_workflow.py"
    empty.write_text("X = 1\n")
    with pytest.raises(ConfigurationError, match="must define"):
        load_workflow(empty)


def test_load_workflow_rejects_other_files(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_workflow(tmp_path / "nope.yml")
    other = tmp_path / "wf.toml"
    other.write_text("")
    with pytest.raises(ConfigurationError, match=".yml/.yaml or .py"):
        load_workflow(other)


def test_find_workflow_files(tmp_path):
    (tmp_path / "releaseci.yml").write_text("")
    (tmp_path / "nightly_workflow.py").write_text("")
    (tmp_path / "notes.txt").write_text("")
    assert [p.name for p in find_workflow_files(tmp_path)] == ["releaseci.yml", "nightly_workflow.py"]


def test_load_settings(tmp_path, monkeypatch):
    monkeypatch.delenv("RELEASECI_CONFIG", raising=False)
    monkeypatch.delenv("RELEASECI_DATABASE_URL", raising=False)
    monkeypatch.delenv("RELEASECI_WORKDIR", raising=False)
    monkeypatch.chdir(tmp_path)
    assert load_settings().database_url is None

    cfg = tmp_path / "settings.yaml"
    cfg.write_text("output_tail: 100\ndatabase_url: sqlite:///a.db\n")
    s = load_settings(str(cfg))
    assert s.output_tail == 100 and s.database_url == "sqlite:///a.db"

    monkeypatch.setenv("RELEASECI_DATABASE_URL", "sqlite:///b.db")
    monkeypatch.setenv("RELEASECI_WORKDIR", "/work")
    s = load_settings(str(cfg))
    assert s.database_url == "sqlite:///b.db" and s.workdir == "/work"

    cfg.write_text("output_tail: lots\n")
    with pytest.raises(ConfigurationError, match="settings"):
        load_settings(str(cfg))


def test_unquoted_float_version_rejected():
    text = """
        tools:
          - name: rust
            version: 1.70
            install: rustup
        jobs:
          j:
            steps: [{name: s, run: "true"}]
        """
    with pytest.raises(ConfigurationError) as exc:
        parse(text)
    assert "tools.0.version" in str(exc.value)
    assert "quote it" in str(exc.value)

    w = parse(text.replace("version: 1.70", 'version: "1.70"'))
    assert w.tools[0].version == "1.70"
