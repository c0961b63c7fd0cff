from __future__ import annotations

import io
import logging
import re
import zipfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from farmrun.errors import ArtifactNotFoundError, ExtractionError

LOGGER = logging.getLogger("farmrun.bundles")

BUNDLE_FILES = ("package.json", "tsconfig.json")
BUNDLE_DIRECTORIES = ("config", "test")
TEST_FILE_SUFFIXES = (".e2e.ts", ".e2e.js")

# it('name') / it.only("name") / it(`name`)
_CASE_PATTERN = re.compile(r"""(?<![\w.$])it(?:\.only)?\s*\(\s*(['"`])(.+?)\1""")
_FIXED_TIMESTAMP = (1980, 1, 1, 0, 0, 0)


def _bundle_members(project_root: Path) -> Iterator[Path]:
    for name in BUNDLE_FILES:
        path = project_root / name
        if not path.is_file():
            raise ArtifactNotFoundError(f"Test project is missing {name}")
        yield path
    for name in BUNDLE_DIRECTORIES:
        directory = project_root / name
        if not directory.is_dir():
            raise ArtifactNotFoundError(f"Test project is missing {name}/")
        for path in sorted(directory.rglob("*")):
            if path.is_file() and "node_modules" not in path.parts:
                yield path


def package_test_bundle(project_root: Path, destination: Optional[Path] = None) -> bytes:
    """Zip the files the remote worker needs to run the suite.

    Entries are sorted and stamped with a fixed timestamp, so packaging the
    same tree twice yields identical bytes.
    """
    project_root = project_root.resolve()
    buffer = io.BytesIO()
    count = 0
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as bundle:
        for path in _bundle_members(project_root):
            info = zipfile.ZipInfo(path.relative_to(project_root).as_posix(), date_time=_FIXED_TIMESTAMP)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            bundle.writestr(info, path.read_bytes())
            count += 1
    data = buffer.getvalue()
    if destination is not None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
    LOGGER.info("Packaged %s files from %s (%s bytes)", count, project_root, len(data))
    return data


def extract_case_names(source: str) -> List[str]:
    return [match.group(2) for match in _CASE_PATTERN.finditer(source)]


def discover_test_suites(bundle: bytes) -> Dict[str, List[str]]:
    """Map each end-to-end test file in the bundle to its case names."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(bundle))
    except zipfile.BadZipFile as exc:
        raise ExtractionError(f"Test bundle is not a valid zip file: {exc}") from exc
    suites: Dict[str, List[str]] = {}
    with archive:
        for name in sorted(archive.namelist()):
            if not name.endswith(TEST_FILE_SUFFIXES):
                continue
            cases = extract_case_names(archive.read(name).decode("utf-8", errors="replace"))
            if cases:
                suites[name] = cases
    return suites
