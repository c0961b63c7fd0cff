from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Union

from jinja2 import Environment

from farmrun.constants import (
    APPIUM_READY_ATTEMPTS,
    APPIUM_READY_SLEEP_SECONDS,
    APPIUM_STATUS_URL,
    REPORT_FILENAME,
)
from farmrun.errors import InvalidSelectionError
from farmrun.schemas import Platform, SelectionMode
from farmrun.templating import templates

TEMPLATE_NAME = "testspec.yml.j2"


def _check_text(label: str, value: str) -> None:
    if not value.strip():
        raise InvalidSelectionError(f"{label} cannot be blank")
    if any(ch in value for ch in "\r\n\x00"):
        raise InvalidSelectionError(f"{label} must be a single line")


@dataclass(frozen=True)
class TestSelection:
    """Which part of the suite a run executes."""

    __test__ = False

    mode: SelectionMode = SelectionMode.full
    file_path: Optional[str] = None
    case_filter: Optional[str] = None

    def __post_init__(self) -> None:
        if self.mode == SelectionMode.full:
            return
        if not self.file_path:
            raise InvalidSelectionError(f"{self.mode.value} selection requires a test file")
        _check_text("Test file", self.file_path)
        if self.file_path.startswith("/") or ".." in self.file_path.split("/"):
            raise InvalidSelectionError("Test file must be relative to the test bundle")
        if self.mode == SelectionMode.single_case:
            if not self.case_filter:
                raise InvalidSelectionError("single_case selection requires a test case filter")
            _check_text("Test case filter", self.case_filter)

    @classmethod
    def from_request(
        cls,
        mode: SelectionMode,
        selected_test: Optional[str] = None,
        selected_test_case: Optional[str] = None,
    ) -> "TestSelection":
        if mode == SelectionMode.full:
            return cls()
        if mode == SelectionMode.single_file:
            return cls(mode=mode, file_path=selected_test)
        return cls(mode=mode, file_path=selected_test, case_filter=selected_test_case)


@dataclass(frozen=True)
class PlatformProfile:
    platform_name: str
    automation_name: str
    wdio_config: str
    test_host: Optional[str] = None


PROFILES: Dict[Platform, PlatformProfile] = {
    Platform.android: PlatformProfile(
        platform_name="Android",
        automation_name="UiAutomator2",
        wdio_config="config/wdio.android.devicefarm.conf.ts",
        test_host="amazon_linux_2",
    ),
    Platform.ios: PlatformProfile(
        platform_name="iOS",
        automation_name="XCUITest",
        wdio_config="config/wdio.ios.devicefarm.conf.ts",
    ),
}


@dataclass(frozen=True)
class TestSpecDocument:
    __test__ = False

    mode: str
    wdio_config: str
    capabilities: Dict[str, str]
    spec_file: Optional[str] = None
    grep_pattern: Optional[str] = None
    test_host: Optional[str] = None
    node_version: str = "18"
    appium_version: str = "2"
    ready_attempts: int = APPIUM_READY_ATTEMPTS
    ready_sleep_seconds: int = APPIUM_READY_SLEEP_SECONDS
    status_url: str = APPIUM_STATUS_URL
    report_filename: str = REPORT_FILENAME


def _capabilities(profile: PlatformProfile) -> Dict[str, str]:
    capabilities = {
        "appium:deviceName": "$DEVICEFARM_DEVICE_NAME",
        "platformName": "$DEVICEFARM_DEVICE_PLATFORM_NAME",
        "appium:app": "$DEVICEFARM_APP_PATH",
        "appium:udid": "$DEVICEFARM_DEVICE_UDID",
        "appium:platformVersion": "$DEVICEFARM_DEVICE_OS_VERSION",
    }
    if profile.platform_name == "Android":
        capabilities["appium:chromedriverExecutableDir"] = "$DEVICEFARM_CHROMEDRIVER_EXECUTABLE_DIR"
    capabilities["appium:automationName"] = profile.automation_name
    return capabilities


class TestSpecGenerator:
    """Render the execution script handed to the remote worker.

    The output depends only on the selection and platform, so identical
    inputs render byte-identical YAML.
    """

    __test__ = False

    def __init__(self, environment: Optional[Environment] = None) -> None:
        self._environment = environment or templates

    def document(self, selection: TestSelection, platform: Union[Platform, str]) -> TestSpecDocument:
        profile = PROFILES[_platform(platform)]
        spec_file = None if selection.mode == SelectionMode.full else selection.file_path
        grep_pattern = selection.case_filter if selection.mode == SelectionMode.single_case else None
        return TestSpecDocument(
            mode=selection.mode.value,
            wdio_config=profile.wdio_config,
            capabilities=_capabilities(profile),
            spec_file=spec_file,
            grep_pattern=grep_pattern,
            test_host=profile.test_host,
        )

    def generate(self, selection: TestSelection, platform: Union[Platform, str]) -> str:
        template = self._environment.get_template(TEMPLATE_NAME)
        return template.render(doc=self.document(selection, platform))


def _platform(value: Union[Platform, str]) -> Platform:
    if isinstance(value, Platform):
        return value
    try:
        return Platform(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidSelectionError(f"Unsupported platform: {value}") from exc
