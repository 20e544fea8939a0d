#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK
#
# setup_android_env.py - provision an Android SDK for headless builds
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import argparse
import io
import os
import shlex
import shutil
import stat
import subprocess
import sys
import tempfile
import zipfile
import zlib
from pathlib import Path

import requests

DEFAULT_SDK_ROOT = '~/android_sdk'
# https://developer.android.com/studio#command-line-tools-only
CMDLINE_TOOLS_URL = (
    'https://dl.google.com/android/repository/commandlinetools-linux-13114758_latest.zip'
)
BUILD_TOOLS_VERSION = '34.0.0'
PLATFORM_VERSION = 'android-34'

HTTP_HEADERS = {'User-Agent': 'setup-android-env'}

# The archive unpacks to this directory, sdkmanager only finds itself under 'latest'
# https://developer.android.com/tools/sdkmanager
EXTRACTED_DIR_NAME = 'cmdline-tools'
CANONICAL_DIR_NAME = 'latest'

# sdkmanager --licenses asks once per unaccepted license, plus the initial review
# prompt.  The answers are bounded so a prompt loop ends at EOF instead of spinning.
LICENSE_ANSWERS = 'y\n' * 256

verbose = False


class ProvisionError(Exception):
    exit_code = 1


class ConfigError(ProvisionError):
    exit_code = 2


class DownloadError(ProvisionError):
    exit_code = 3


class ExtractError(ProvisionError):
    exit_code = 4


class FilesystemError(ProvisionError):
    exit_code = 5


class SdkManagerError(ProvisionError):
    exit_code = 6


class ValidationError(ProvisionError):
    exit_code = 7


class ProvisionResult:
    """The outcome of a successful provisioning run

    Nothing is exported into the running process by provision() itself,
    the caller decides where the variables go with apply(), or persists
    them for a later session with shell_exports().

    """

    def __init__(self, sdk_root, sdkmanager, packages, environ):
        self.sdk_root = sdk_root
        self.sdkmanager = sdkmanager
        self.packages = packages
        self.environ = environ

    def child_environ(self):
        """Return a copy of os.environ overlaid with the SDK variables"""
        env = os.environ.copy()
        env.update(self.environ)
        return env

    def apply(self, environ=None):
        if environ is None:
            environ = os.environ
        environ.update(self.environ)
        return environ

    def shell_exports(self):
        return ''.join(
            'export %s=%s\n' % (k, shlex.quote(v)) for k, v in self.environ.items()
        )


def banner(msg):
    print('-->', msg, flush=True)


def debug(*args):
    if verbose:
        print('   ', *args, flush=True)


def requests_session():
    session = requests.Session()
    session.headers.update(HTTP_HEADERS)
    return session


def get_sdk_root(path):
    """Get the pathlib.Path of the SDK root, creating it as the current user

    No privileges are ever requested, so the root must be somewhere the
    invoking user can write, e.g. under their home directory.

    """
    if not path or not str(path).strip():
        raise FilesystemError('SDK root is set to blank!')
    sdk_root = Path(path).expanduser().absolute()
    try:
        sdk_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError('Cannot create SDK root "%s": %s' % (sdk_root, e)) from e
    if not sdk_root.is_dir():
        raise FilesystemError('SDK root "%s" is not a directory!' % sdk_root)
    if not os.access(str(sdk_root), os.W_OK | os.X_OK):
        raise FilesystemError('SDK root "%s" is not writable!' % sdk_root)
    return sdk_root


def download_file(url, local_filename, timeout=None):
    """Download a file, aborting on any network error or non-2xx status

    The stream=True parameter keeps memory usage low.
    """
    print('Downloading', url, 'into', local_filename, flush=True)
    try:
        with requests_session() as session, session.get(
            url, stream=True, allow_redirects=True, timeout=timeout
        ) as r:
            r.raise_for_status()
            if r.status_code == 304:
                raise DownloadError('304 Not Modified: ' + url)
            size = 0
            with Path(local_filename).open('wb') as f:
                for chunk in r.iter_content(chunk_size=io.DEFAULT_BUFFER_SIZE):
                    if chunk:  # filter out keep-alive new chunks
                        f.write(chunk)
                        size += len(chunk)
    except requests.exceptions.RequestException as e:
        raise DownloadError('Failed to download %s: %s' % (url, e)) from e
    except OSError as e:
        raise FilesystemError('Failed to write %s: %s' % (local_filename, e)) from e
    debug('downloaded %d bytes' % size)
    return local_filename


def unzip(zipball, dest):
    """Extract zipball into dest, overwriting and keeping the unix permissions

    Returns the set of top-level entries in the archive.
    """
    dest = Path(dest)
    toplevels = set()
    try:
        with zipfile.ZipFile(str(zipball)) as zipfp:
            for info in zipfp.infolist():
                permbits = info.external_attr >> 16
                writefile = str(dest / info.filename)
                if stat.S_ISLNK(permbits):
                    link = dest / info.filename
                    link.parent.mkdir(0o755, parents=True, exist_ok=True)
                    if link.is_symlink() or link.exists():
                        link.unlink()
                    link_target = zipfp.read(info).decode()
                    os.symlink(link_target, str(link))

                    try:
                        link.resolve().relative_to(dest.resolve())
                    except (FileNotFoundError, ValueError):
                        link.unlink()
                        print(
                            'ERROR: Unexpected symlink target: {link} -> {target}'.format(
                                link=info.filename, target=link_target
                            )
                        )
                elif info.is_dir() or stat.S_ISDIR(permbits) or stat.S_IXUSR & permbits:
                    zipfp.extract(info.filename, path=str(dest))
                    os.chmod(writefile, 0o755)  # nosec bandit B103
                else:
                    zipfp.extract(info.filename, path=str(dest))
                    os.chmod(writefile, 0o644)  # nosec bandit B103
            toplevels.update([p.split('/')[0] for p in zipfp.namelist()])
    except (
        zipfile.BadZipFile,
        zlib.error,
        EOFError,
        NotImplementedError,
        UnicodeDecodeError,
        FileNotFoundError,
    ) as e:
        raise ExtractError('Cannot extract %s: %s' % (zipball, e)) from e
    except OSError as e:
        raise FilesystemError('Cannot extract into %s: %s' % (dest, e)) from e
    return toplevels


def install_cmdline_tools(sdk_root, url, timeout=None):
    """Download the command-line tools and install them as cmdline-tools/latest

    Any previous cmdline-tools/latest is replaced, not merged into.  The
    temporary download directory is removed on every exit path.

    """
    tools_dir = sdk_root / 'cmdline-tools'
    latest = tools_dir / CANONICAL_DIR_NAME
    with tempfile.TemporaryDirectory(prefix='.setup-android-env-') as tmp_dir:
        zipball = Path(tmp_dir) / 'cmdline-tools.zip'
        download_file(url, zipball, timeout=timeout)

        try:
            tools_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError('Cannot create %s: %s' % (tools_dir, e)) from e

        debug('unzipping to', tools_dir)
        toplevels = unzip(zipball, tools_dir)
        extracted = tools_dir / EXTRACTED_DIR_NAME
        if EXTRACTED_DIR_NAME not in toplevels or not extracted.is_dir():
            raise ExtractError(
                '%s does not contain a top-level "%s" directory (found: %s)'
                % (url, EXTRACTED_DIR_NAME, ', '.join(sorted(toplevels)) or 'nothing')
            )

        debug('installing into', latest)
        try:
            if latest.is_symlink() or latest.is_file():
                latest.unlink()
            elif latest.exists():
                shutil.rmtree(str(latest))
            extracted.rename(latest)
        except OSError as e:
            raise FilesystemError('Cannot install into %s: %s' % (latest, e)) from e
    return latest


def build_environ(sdk_root, path=None):
    """Return the SDK variables with the tool directories ahead of the prior PATH"""
    if path is None:
        path = os.environ.get('PATH', '')
    sdk_root = str(sdk_root)
    search = [
        os.path.join(sdk_root, 'cmdline-tools', CANONICAL_DIR_NAME, 'bin'),
        os.path.join(sdk_root, 'platform-tools'),
    ]
    if path:
        search.append(path)
    return {
        'ANDROID_HOME': sdk_root,
        'ANDROID_SDK_ROOT': sdk_root,
        'PATH': os.pathsep.join(search),
    }


def _run_sdkmanager(args, env, timeout=None, **kwargs):
    debug('running', shlex.join(args))
    try:
        return subprocess.run(args, env=env, timeout=timeout, check=True, **kwargs)
    except subprocess.CalledProcessError as e:
        raise SdkManagerError(
            '"%s" exited with status %d' % (shlex.join(args), e.returncode)
        ) from e
    except subprocess.TimeoutExpired as e:
        raise SdkManagerError(
            '"%s" timed out after %s seconds' % (shlex.join(args), timeout)
        ) from e
    except OSError as e:
        raise SdkManagerError('Cannot run %s: %s' % (args[0], e)) from e


def accept_licenses(sdkmanager, environ, timeout=None):
    """Answer yes to every license prompt, the headless equivalent of `yes |`"""
    _run_sdkmanager(
        [str(sdkmanager), '--licenses'],
        environ,
        timeout=timeout,
        input=LICENSE_ANSWERS,
        text=True,
        stdout=subprocess.DEVNULL,
    )


def install_packages(sdkmanager, packages, environ, timeout=None):
    sys.stdout.flush()
    _run_sdkmanager([str(sdkmanager)] + list(packages), environ, timeout=timeout)


def _which(name, result):
    found = shutil.which(name, path=result.environ['PATH'])
    if found is None:
        raise ValidationError('%s not found in PATH' % name)
    try:
        Path(found).resolve().relative_to(Path(result.sdk_root).resolve())
    except ValueError:
        raise ValidationError(
            '%s resolves to %s which is outside of %s' % (name, found, result.sdk_root)
        ) from None
    return found


def validate(result, timeout=None):
    """Print a summary of the new environment, failing if it did not converge"""
    env = result.child_environ()

    print('Java Version:', flush=True)
    try:
        subprocess.run(['java', '-version'], env=env, timeout=timeout, check=True)
    except (OSError, subprocess.SubprocessError) as e:
        raise ValidationError('Cannot run java -version: %s' % e) from e
    print()

    print('ANDROID_HOME:')
    print(result.environ['ANDROID_HOME'])
    print()

    print('PATH:')
    print(result.environ['PATH'])
    print()

    print('Verifying tool locations:')
    for name in ('sdkmanager', 'adb'):
        print(_which(name, result))
    print()

    print('Listing installed SDK packages:', flush=True)
    try:
        _run_sdkmanager([str(result.sdkmanager), '--list_installed'], env, timeout)
    except SdkManagerError as e:
        raise ValidationError(str(e)) from e
    print()


def default_packages(build_tools=BUILD_TOOLS_VERSION, platform=PLATFORM_VERSION):
    return [
        'platform-tools',
        'build-tools;%s' % build_tools,
        'platforms;%s' % platform,
    ]


def read_package_files(paths):
    """Read one sdk-style package path per line, skipping blanks and # comments"""
    packages = []
    for path in paths:
        try:
            with Path(path).open() as fp:
                for line in fp:
                    line = line.split('#', 1)[0].strip()
                    if line:
                        packages.append(line)
        except OSError as e:
            raise ConfigError('Cannot read package file %s: %s' % (path, e)) from e
    return packages


def provision(sdk_root, url, packages, timeout=None):
    """Install the command-line tools and packages into sdk_root

    Each step must succeed before the next one starts, the first failure
    raises a ProvisionError subclass.  Licenses are always accepted
    before anything is installed.

    Parameters
    ----------
    sdk_root
        Directory to install into, created if missing.

    url
        The pinned commandlinetools zip to bootstrap from.

    packages
        sdk-style package paths, passed verbatim to sdkmanager.

    """
    packages = list(dict.fromkeys(packages))
    if not packages:
        raise ConfigError('No packages to install')
    for package in packages:
        if not package or not package.strip():
            raise ConfigError('Empty package name in %r' % (packages,))

    sdk_root = get_sdk_root(sdk_root)

    banner('Downloading and setting up Android SDK command-line tools...')
    latest = install_cmdline_tools(sdk_root, url, timeout=timeout)
    sdkmanager = latest / 'bin' / 'sdkmanager'
    if not sdkmanager.exists():
        raise ExtractError('%s does not contain bin/sdkmanager' % url)

    banner('Configuring ANDROID_HOME and PATH environment variables...')
    result = ProvisionResult(sdk_root, sdkmanager, packages, build_environ(sdk_root))
    env = result.child_environ()

    banner('Accepting SDK licenses automatically...')
    accept_licenses(sdkmanager, env, timeout=timeout)

    banner('Installing SDK packages (%s)...' % ', '.join(packages))
    install_packages(sdkmanager, packages, env, timeout=timeout)

    banner('Validating the new environment...')
    validate(result, timeout=timeout)
    return result


def write_env_file(result, path):
    try:
        Path(path).write_text(result.shell_exports())
    except OSError as e:
        raise FilesystemError('Cannot write %s: %s' % (path, e)) from e
    print('Environment written to', path)


def main():
    global verbose

    parser = argparse.ArgumentParser(
        description='Download and configure the Android SDK command-line tools.'
    )
    parser.add_argument("--sdk_root", default=DEFAULT_SDK_ROOT)
    parser.add_argument("--url", default=CMDLINE_TOOLS_URL)
    parser.add_argument("--build_tools", default=BUILD_TOOLS_VERSION)
    parser.add_argument("--platform", default=PLATFORM_VERSION)
    parser.add_argument(
        "--package_file",
        action="append",
        default=[],
        help="file with one sdk-style package path per line",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="seconds to wait on each network read or sdkmanager call",
    )
    parser.add_argument(
        "--env_file", help="write shell exports for the new environment here"
    )
    parser.add_argument(
        "--verbose", action="store_true", help="increase output verbosity"
    )
    parser.add_argument('packages', nargs='*', help="additional packages to install")

    # do not require argcomplete to keep the install profile light
    try:
        import argcomplete

        argcomplete.autocomplete(parser)
    except ImportError:
        pass

    args = parser.parse_args()
    verbose = args.verbose

    print('--- Starting Android SDK Environment Setup ---', flush=True)
    try:
        packages = default_packages(args.build_tools, args.platform)
        packages += read_package_files(args.package_file)
        packages += args.packages
        result = provision(args.sdk_root, args.url, packages, timeout=args.timeout)
        result.apply()
        if args.env_file:
            write_env_file(result, args.env_file)
    except ProvisionError as e:
        sys.stdout.flush()
        print('ERROR:', e, file=sys.stderr)
        sys.exit(e.exit_code)
    print('--- Android SDK Environment Setup Complete ---')


if __name__ == "__main__":
    main()
