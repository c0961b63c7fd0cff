REPORT_FILENAME = "allure-report-complete.html"
CUSTOMER_ARTIFACTS_MARKER = "Customer Artifacts"
REPORT_CONTENT_MARKER = "allure"
REPORT_CANONICAL_PATHS = [
    ("Host_Machine_Files", "$DEVICEFARM_LOG_DIR", REPORT_FILENAME),
    ("Host_Machine_Files", "DEVICEFARM_LOG_DIR", REPORT_FILENAME),
]
MANUAL_EXTRACTION_INSTRUCTIONS = (
    "Download and extract the zip file, then open "
    f"Host_Machine_Files/$DEVICEFARM_LOG_DIR/{REPORT_FILENAME} in your browser"
)

DEFAULT_REPORT_PREFIX = "allure"
DEFAULT_HISTORY_KEY = "test-history.json"
DEFAULT_HISTORY_LIMIT = 100
DEFAULT_TEST_BUNDLE_KEY = "device-farm-test-package.zip"

TEST_TYPE = "APPIUM_NODE"
APPIUM_STATUS_URL = "http://localhost:4723/status"
APPIUM_READY_ATTEMPTS = 90
APPIUM_READY_SLEEP_SECONDS = 1

ACTIVE_RUN_STATUSES = {
    "PENDING",
    "PENDING_CONCURRENCY",
    "PENDING_DEVICE",
    "PROCESSING",
    "SCHEDULING",
    "PREPARING",
    "RUNNING",
}
COMPLETED_RUN_STATUS = "COMPLETED"

BINARY_REUSE_WINDOW_SECONDS = 24 * 60 * 60
