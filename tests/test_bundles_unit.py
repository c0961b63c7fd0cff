from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from farmrun import cli as farmrun_cli
from farmrun.config import Settings
from farmrun.constants import DEFAULT_TEST_BUNDLE_KEY
from farmrun.errors import ArtifactNotFoundError, ExtractionError
from farmrun.services.bundles import discover_test_suites, extract_case_names, package_test_bundle
from farmrun.services.storage import LocalObjectStore

LOGIN_SPEC = """
describe('Login', () => {
    it('should login with valid credentials', async () => {});
    it.only("should show an error for a bad password", async () => {});
    // submit('not a case')
    it(`handles biometrics`, async () => {});
});
"""


def _project(root: Path) -> Path:
    (root / "config").mkdir(parents=True)
    (root / "test" / "e2e").mkdir(parents=True)
    (root / "test" / "screens").mkdir(parents=True)
    (root / "package.json").write_text('{"name": "mobile-tests"}', encoding="utf-8")
    (root / "tsconfig.json").write_text("{}", encoding="utf-8")
    (root / "config" / "wdio.android.devicefarm.conf.ts").write_text("export const config = {}", encoding="utf-8")
    (root / "test" / "e2e" / "login.e2e.ts").write_text(LOGIN_SPEC, encoding="utf-8")
    (root / "test" / "screens" / "login.screen.ts").write_text("it('helper')", encoding="utf-8")
    return root


@pytest.mark.unit
def test_bundle_contains_project_files_and_is_reproducible(tmp_path: Path) -> None:
    project = _project(tmp_path / "project")

    first = package_test_bundle(project, tmp_path / "out" / "bundle.zip")
    second = package_test_bundle(project)

    assert first == second
    assert (tmp_path / "out" / "bundle.zip").read_bytes() == first
    names = zipfile.ZipFile(io.BytesIO(first)).namelist()
    assert names == [
        "package.json",
        "tsconfig.json",
        "config/wdio.android.devicefarm.conf.ts",
        "test/e2e/login.e2e.ts",
        "test/screens/login.screen.ts",
    ]


@pytest.mark.unit
def test_bundle_requires_package_json(tmp_path: Path) -> None:
    project = _project(tmp_path / "project")
    (project / "package.json").unlink()

    with pytest.raises(ArtifactNotFoundError):
        package_test_bundle(project)


@pytest.mark.unit
def test_suites_are_discovered_from_e2e_files_only(tmp_path: Path) -> None:
    bundle = package_test_bundle(_project(tmp_path / "project"))

    suites = discover_test_suites(bundle)

    assert suites == {
        "test/e2e/login.e2e.ts": [
            "should login with valid credentials",
            "should show an error for a bad password",
            "handles biometrics",
        ]
    }


@pytest.mark.unit
def test_case_names_ignore_lookalike_calls() -> None:
    assert extract_case_names("submit('x'); audit('y'); it ( 'z' )") == ["z"]


@pytest.mark.unit
def test_invalid_bundle_is_rejected() -> None:
    with pytest.raises(ExtractionError):
        discover_test_suites(b"not a zip")


class StubPipeline:
    def __init__(self, tests: LocalObjectStore) -> None:
        self.settings = Settings()
        self.tests = tests


@pytest.fixture
def stored_tests(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> LocalObjectStore:
    store = LocalObjectStore(tmp_path / "tests")
    monkeypatch.setattr(farmrun_cli, "get_settings", lambda: Settings())
    monkeypatch.setattr(farmrun_cli, "get_pipeline", lambda: StubPipeline(store))
    return store


@pytest.mark.unit
def test_package_command_stores_bundle_under_configured_key(tmp_path: Path, stored_tests: LocalObjectStore) -> None:
    project = _project(tmp_path / "project")

    result = CliRunner().invoke(farmrun_cli.cli, ["package-tests", str(project)])

    assert result.exit_code == 0, result.output
    assert "Packaged 1 test files with 3 cases" in result.output
    stored = stored_tests.get(DEFAULT_TEST_BUNDLE_KEY)
    assert stored is not None
    assert stored.body == package_test_bundle(project)
    assert stored.content_type == "application/zip"


@pytest.mark.unit
def test_package_command_without_upload_leaves_store_untouched(tmp_path: Path, stored_tests: LocalObjectStore) -> None:
    project = _project(tmp_path / "project")
    output = tmp_path / "out" / "bundle.zip"

    result = CliRunner().invoke(farmrun_cli.cli, ["package-tests", str(project), "--output", str(output), "--no-upload"])

    assert result.exit_code == 0, result.output
    assert output.is_file()
    assert stored_tests.get(DEFAULT_TEST_BUNDLE_KEY) is None


@pytest.mark.unit
def test_package_command_reports_incomplete_project(tmp_path: Path, stored_tests: LocalObjectStore) -> None:
    project = _project(tmp_path / "project")
    (project / "tsconfig.json").unlink()

    result = CliRunner().invoke(farmrun_cli.cli, ["package-tests", str(project)])

    assert result.exit_code == 1
    assert "tsconfig.json" in result.output
    assert stored_tests.get(DEFAULT_TEST_BUNDLE_KEY) is None
