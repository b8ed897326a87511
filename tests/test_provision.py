import sys

import pytest

from conftest import write_script
from releaseci.dsl import tool
from releaseci.errors import ProvisioningError, RunCancelled
from releaseci.executor import CancelToken
from releaseci.model import CargoInstall, CommandInstall, PipInstall, RustupInstall, ToolSpec
from releaseci.provision import EnvironmentProvisioner, install_commands, run_command, satisfies


class FakeInstaller:
    """Answers version checks like a real tool and 'installs' by writing a script."""

    def __init__(self, bin_dir, version="1.2.3", fail=False):
        self.bin_dir = bin_dir
        self.version = version
        self.fail = fail
        self.installs = []

    def __call__(self, argv, env):
        if len(argv) == 2 and argv[1] in ("--version", "-V", "version"):
            return 0, f"{argv[0].rsplit('/', 1)[-1]} {self.version}"
        self.installs.append(argv)
        if self.fail:
            return 1, "error: could not compile"
        write_script(self.bin_dir, argv[2], f"echo {argv[2]} {self.version}")
        return 0, "installed"


@pytest.mark.parametrize(
    "output,constraint,ok",
    [
        ("cargo-release 0.25.0", "*", True),
        ("rustc 1.75.0 (82e1608df 2023-12-21)", "stable", True),
        ("cross 0.2.5", "0.2.5", True),
        ("cross 0.2.5", "v0.2.5", True),
        ("cross 0.2.5", "0.2.4", False),
        ("cross 0.2.5", "0.2.*", True),
        ("cross 0.20.1", "0.2.*", False),
        ("no version here", "1.0", False),
    ],
)
def test_satisfies(output, constraint, ok):
    assert satisfies(output, constraint) is ok


def test_install_commands_per_method():
    assert install_commands(ToolSpec("cargo")) == []
    assert install_commands(ToolSpec("cross", "0.2.5", CargoInstall(locked=True))) == [
        ["cargo", "install", "cross", "--version", "0.2.5", "--locked"]
    ]
    assert install_commands(ToolSpec("ruff", install=PipInstall())) == [[sys.executable, "-m", "pip", "install", "ruff"]]
    assert install_commands(ToolSpec("x", "1.0", PipInstall(package="x-cli"))) == [
        [sys.executable, "-m", "pip", "install", "x-cli==1.0"]
    ]
    assert install_commands(ToolSpec("rust", "stable", RustupInstall(override=True, components=("clippy",)))) == [
        ["rustup", "toolchain", "install", "stable", "--profile", "minimal", "--component", "clippy"],
        ["rustup", "default", "stable"],
    ]
    assert install_commands(ToolSpec("t", "2", CommandInstall(command="get {name}@{version}"))) == [
        ["/bin/sh", "-c", "get t@2"]
    ]


def test_present_tool_is_not_installed(tmp_path):
    bin_dir = tmp_path / "bin"
    write_script(bin_dir, "cross", "echo cross 0.2.5")
    fake = FakeInstaller(bin_dir)
    prov = EnvironmentProvisioner(env={"PATH": str(bin_dir)}, runner=fake)
    (res,) = prov.provision([tool("cross", install="cargo")])
    assert res.action == "present"
    assert fake.installs == []


def test_provision_is_idempotent(tmp_path):
    bin_dir = tmp_path / "bin"
    fake = FakeInstaller(bin_dir)
    prov = EnvironmentProvisioner([tool("cargo-release", install="cargo")], env={"PATH": str(bin_dir)}, runner=fake)

    first = prov.provision()
    second = prov.provision()

    assert [r.action for r in first] == ["installed"]
    assert [r.action for r in second] == ["present"]
    assert len(fake.installs) == 1
    assert "cargo-release" in prov.provisioned


def test_missing_preinstalled_tool(tmp_path):
    prov = EnvironmentProvisioner(env={"PATH": str(tmp_path)}, runner=FakeInstaller(tmp_path))
    with pytest.raises(ProvisioningError, match="preinstalled") as exc:
        prov.provision([tool("cargo")])
    assert "rustup.rs" in exc.value.details["hint"]


def test_failed_install(tmp_path):
    fake = FakeInstaller(tmp_path / "bin", fail=True)
    prov = EnvironmentProvisioner(env={"PATH": str(tmp_path / "bin")}, runner=fake)
    with pytest.raises(ProvisioningError, match="exit=1") as exc:
        prov.provision([tool("cross", install="cargo")])
    assert "could not compile" in exc.value.details["output"]


def test_wrong_version_after_install(tmp_path):
    bin_dir = tmp_path / "bin"
    fake = FakeInstaller(bin_dir, version="0.1.0")
    prov = EnvironmentProvisioner(env={"PATH": str(bin_dir)}, runner=fake)
    with pytest.raises(ProvisioningError, match="still not satisfying"):
        prov.provision([tool("cross", "0.2.5", install="cargo")])


def test_run_command_missing_binary():
    code, out = run_command(["definitely-not-a-real-binary-xyz"], {"PATH": "/nonexistent"})
    assert code == 127


def test_command_template_leaves_shell_braces_alone():
    spec = ToolSpec("mytool", "1.2.3", CommandInstall(command='curl -sSf https://x/{name}-{version} | sh -s -- --to "${HOME}/.local"'))
    assert install_commands(spec) == [
        ["/bin/sh", "-c", 'curl -sSf https://x/mytool-1.2.3 | sh -s -- --to "${HOME}/.local"']
    ]


def test_command_install_with_shell_variables(tmp_path):
    bin_dir = tmp_path / "bin"
    command = (
        r'mkdir -p "${BIN}" && printf "#!/bin/sh\necho {name} {version}\n" > "${BIN}/{name}"'
        r' && chmod +x "${BIN}/{name}"'
    )
    prov = EnvironmentProvisioner(env={"PATH": f"{bin_dir}:/usr/bin:/bin", "BIN": str(bin_dir)})
    (res,) = prov.provision([tool("mytool", "1.2.3", install="command", command=command)])
    assert res.action == "installed"
    assert "1.2.3" in res.version


def test_cancel_stops_between_tools(tmp_path):
    bin_dir = tmp_path / "bin"
    cancel = CancelToken()
    fake = FakeInstaller(bin_dir)

    def installer(argv, env):
        result = fake(argv, env)
        if argv[1] == "install":
            cancel.cancel()
        return result

    prov = EnvironmentProvisioner(env={"PATH": str(bin_dir)}, runner=installer)
    with pytest.raises(RunCancelled, match="cross"):
        prov.provision([tool("cargo-release", install="cargo"), tool("cross", install="cargo")], cancel=cancel)
    assert [argv[2] for argv in fake.installs] == ["cargo-release"]
