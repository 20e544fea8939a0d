"""Shared fixtures: a fake download server and a stub sdkmanager archive."""

import io
import os
import stat
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Optional

import pytest
import requests

import setup_android_env

# Behaves like the parts of sdkmanager this tool drives: it refuses to
# install before licenses are accepted and records every invocation.
SDKMANAGER_STUB = r"""#!/bin/sh
root=$(cd "$(dirname "$0")/../../.." && pwd)
echo "$*" >> "$root/.sdkmanager-calls"
case "$1" in
--licenses)
    cat > /dev/null
    mkdir -p "$root/licenses"
    echo 24333f8a63b6825ea9c5514f83c2829b004d1fee > "$root/licenses/android-sdk-license"
    exit 0
    ;;
--list_installed)
    echo "Installed packages:"
    sort "$root/.installed"
    exit 0
    ;;
esac
if [ ! -f "$root/licenses/android-sdk-license" ]; then
    echo "Failed to install: licenses not accepted" >&2
    exit 1
fi
for pkg in "$@"; do
    case "$pkg" in
    platform-tools)
        mkdir -p "$root/platform-tools"
        printf '#!/bin/sh\necho adb\n' > "$root/platform-tools/adb"
        chmod 755 "$root/platform-tools/adb"
        ;;
    "build-tools;"*)
        mkdir -p "$root/build-tools/${pkg#build-tools;}"
        ;;
    "platforms;"*)
        mkdir -p "$root/platforms/${pkg#platforms;}"
        ;;
    *)
        echo "Warning: Failed to find package '$pkg'" >&2
        exit 1
        ;;
    esac
    grep -qxF "$pkg" "$root/.installed" 2>/dev/null || echo "$pkg" >> "$root/.installed"
done
"""

JAVA_STUB = """#!/bin/sh
echo 'openjdk version "17.0.2" 2022-01-18' >&2
"""

CMDLINE_TOOLS_URL = "https://dl.example.com/commandlinetools-linux-1_latest.zip"


def _zip_entry(zipfp: zipfile.ZipFile, name: str, data: str, mode: int) -> None:
    info = zipfile.ZipInfo(name)
    info.external_attr = mode << 16
    zipfp.writestr(info, data)


def make_cmdline_tools_zip(toplevel: str = "cmdline-tools") -> bytes:
    """Build a commandlinetools-style archive around the sdkmanager stub."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zipfp:
        _zip_entry(zipfp, toplevel + "/", "", stat.S_IFDIR | 0o755)
        _zip_entry(zipfp, toplevel + "/bin/", "", stat.S_IFDIR | 0o755)
        _zip_entry(
            zipfp, toplevel + "/bin/sdkmanager", SDKMANAGER_STUB, stat.S_IFREG | 0o755
        )
        _zip_entry(
            zipfp,
            toplevel + "/source.properties",
            "Pkg.Revision=19.0\nPkg.Path=cmdline-tools;19.0\n",
            stat.S_IFREG | 0o644,
        )
    return buf.getvalue()


class FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200) -> None:
        self.content = content
        self.status_code = status_code
        self.closed = False

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(
                "%d Client Error" % self.status_code, response=self  # type: ignore[arg-type]
            )

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]


class FakeSession:
    """Stands in for requests.Session, serving one payload or raising one error."""

    def __init__(
        self,
        content: bytes = b"",
        status_code: int = 200,
        error: Optional[Exception] = None,
    ) -> None:
        self.content = content
        self.status_code = status_code
        self.error = error
        self.requested: list = []
        self.responses: list = []
        self.closed = False

    def __enter__(self) -> "FakeSession":
        return self

    def __exit__(self, *args) -> None:
        self.closed = True

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.requested.append(url)
        if self.error is not None:
            raise self.error
        response = FakeResponse(self.content, self.status_code)
        self.responses.append(response)
        return response


@pytest.fixture
def serve(monkeypatch: pytest.MonkeyPatch) -> Callable[..., FakeSession]:
    """Route downloads to a FakeSession built from the given arguments."""

    def _serve(*args, **kwargs) -> FakeSession:
        session = FakeSession(*args, **kwargs)
        monkeypatch.setattr(setup_android_env, "requests_session", lambda: session)
        return session

    return _serve


@pytest.fixture
def scratch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point tempfile at an empty directory so leaked workspaces are visible."""
    scratch_dir = tmp_path / "scratch"
    scratch_dir.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch_dir))
    return scratch_dir


@pytest.fixture
def system_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A pre-existing PATH entry holding java and stale copies of the SDK tools."""
    bin_dir = tmp_path / "system-bin"
    bin_dir.mkdir()
    for name, script in (
        ("java", JAVA_STUB),
        ("adb", "#!/bin/sh\necho stale adb\n"),
        ("sdkmanager", "#!/bin/sh\nexit 1\n"),
    ):
        exe = bin_dir / name
        exe.write_text(script)
        exe.chmod(0o755)
    monkeypatch.setenv("PATH", str(bin_dir) + os.pathsep + os.environ.get("PATH", ""))
    # recorded so main()'s apply() is undone after each test
    monkeypatch.setenv("ANDROID_HOME", "")
    monkeypatch.setenv("ANDROID_SDK_ROOT", "")
    monkeypatch.setattr(setup_android_env, "verbose", False)
    return bin_dir


@pytest.fixture
def sdk_root(tmp_path: Path) -> Path:
    return tmp_path / "home" / "u" / "android_sdk"
