"""Runtime archive download and extraction.

The archive is a gzipped tarball holding the sandbox root (``.root/``) and is
extracted straight into the workspace. With a build cache directory the
archive is kept on disk between builds, keyed by stack, build tag, the archive
URL and version.
"""

import hashlib
import logging
import pathlib
import shutil
import tarfile
import time
import urllib.error
import urllib.request
from typing import BinaryIO

from rpack.config import BuildConfig
from rpack.steps import BuildError


def archive_url(*, base_url: str, build_tag: str, version: str, stack: str) -> str:
    """Build the canonical download URL of a runtime archive.

    :param base_url: Distribution base URL (bucket endpoint).
    :param build_tag: Build identifier tag.
    :param version: R version.
    :param stack: Platform stack tag.
    :returns: Archive URL.
    """

    return f"{base_url.rstrip('/')}/{build_tag}/R-{version}-{stack}.tar.gz"


def _open_url(url: str) -> BinaryIO:
    """Open a URL for streaming, failing on any non-200 response.

    :param url: URL to open.
    :returns: Readable response.
    :raises BuildError: On network errors or a non-200 status.
    """

    try:
        response = urllib.request.urlopen(url)
    except urllib.error.HTTPError as e:
        raise BuildError(f"Download failed (HTTP {e.code}): {url}") from e
    except (urllib.error.URLError, OSError) as e:
        raise BuildError(f"Download failed ({e}): {url}") from e

    # file:// responses carry no status.
    status: int | None = getattr(response, "status", None)
    if status is not None and status != 200:
        response.close()
        raise BuildError(f"Download failed (HTTP {status}): {url}")
    return response


def _extract_stream(fileobj: BinaryIO, dest: pathlib.Path) -> None:
    """Gunzip and untar a stream into ``dest``.

    :param fileobj: Readable gzipped tar stream.
    :param dest: Destination directory.
    :raises BuildError: If decompression fails.
    """

    try:
        with tarfile.open(fileobj=fileobj, mode="r|gz") as tf:
            # The sandbox root ships absolute symlinks that only resolve inside it.
            tf.extractall(dest, filter="tar")
    except (tarfile.TarError, EOFError, OSError) as e:
        raise BuildError(f"Failed to extract runtime archive into {dest}: {e}") from e


def _cached_archive(*, config: BuildConfig, url: str, logger: logging.Logger) -> pathlib.Path:
    """Ensure the archive is present in the build cache.

    :param config: Build config (``cache_dir`` must be set).
    :param url: Archive URL.
    :param logger: Build logger.
    :returns: Path to the cached archive.
    :raises BuildError: If the download fails.
    """

    if config.cache_dir is None:
        raise BuildError("Internal error: archive cache requested without a cache directory.")
    # Distinct base URLs get distinct cache entries.
    url_key: str = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
    cache_dir: pathlib.Path = config.cache_dir / "rpack" / config.stack / config.build_tag / url_key
    archive: pathlib.Path = cache_dir / f"R-{config.r_version}.tar.gz"
    marker: pathlib.Path = cache_dir / f"R-{config.r_version}.ok"

    if marker.is_file() is True and archive.is_file() is True:
        logger.info(f"rpack: runtime archive cache hit ({archive.stat().st_size / (1024 * 1024):.1f} MiB)")
        return archive

    logger.info("rpack: runtime archive cache miss; downloading")
    cache_dir.mkdir(parents=True, exist_ok=True)
    tmp: pathlib.Path = cache_dir / f"R-{config.r_version}.tar.gz.tmp"
    with _open_url(url) as response, open(tmp, "wb") as f:
        shutil.copyfileobj(response, f)
    tmp.replace(archive)
    marker.write_text("ok\n", encoding="utf-8")
    return archive


def fetch_runtime(config: BuildConfig, logger: logging.Logger) -> pathlib.Path:
    """Download the runtime archive and extract it into the workspace.

    :param config: Build config.
    :param logger: Build logger.
    :returns: The sandbox root created by the extraction.
    :raises BuildError: If download or extraction fails, or the archive has no sandbox root.
    """

    url: str = archive_url(
        base_url=config.binaries_url,
        build_tag=config.build_tag,
        version=config.r_version,
        stack=config.stack,
    )
    logger.info(f"rpack: vendoring R {config.r_version} for {config.stack}")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"rpack: archive_url={url}")

    t0: float = time.perf_counter()
    if config.cache_dir is not None:
        archive: pathlib.Path = _cached_archive(config=config, url=url, logger=logger)
        with open(archive, "rb") as f:
            _extract_stream(f, config.workspace)
    else:
        with _open_url(url) as response:
            _extract_stream(response, config.workspace)
    t1: float = time.perf_counter()

    if config.sandbox_root.is_dir() is False:
        raise BuildError(f"Runtime archive did not contain a sandbox root: {config.sandbox_root.name}/")
    logger.info(f"rpack: runtime extracted in {t1 - t0:.2f}s")
    return config.sandbox_root
