import asyncio
import logging
import os
from dataclasses import dataclass, field

import constants
from errors import FatalConfigurationError


logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """
    Run configuration. Defaults come from constants.py; tests shrink the timings.
    """

    base_url: str = constants.BASE_URL
    headless: bool = constants.HEADLESS
    max_depth: int = constants.MAX_CRAWL_DEPTH
    max_pages: int = constants.MAX_PAGES
    delay_between_pages: float = constants.DELAY_BETWEEN_PAGES
    delay_between_downloads: float = constants.DELAY_BETWEEN_DOWNLOADS
    delay_between_records: float = constants.DELAY_BETWEEN_RECORDS
    wait_for_load: float = constants.WAIT_FOR_LOAD
    captcha_poll_interval: float = constants.CAPTCHA_POLL_INTERVAL
    captcha_max_wait: float = constants.CAPTCHA_MAX_WAIT
    captcha_settle_delay: float = constants.CAPTCHA_SETTLE_DELAY
    captcha_progress_interval: float = constants.CAPTCHA_PROGRESS_INTERVAL
    min_file_bytes: int = constants.MIN_FILE_BYTES
    retry_attempts: int = constants.RETRY_ATTEMPTS
    retry_delay: float = constants.RETRY_DELAY
    download_poll_interval: float = constants.DOWNLOAD_POLL_INTERVAL
    download_max_wait: float = constants.DOWNLOAD_MAX_WAIT
    static_fallback: bool = constants.STATIC_FALLBACK
    manual_login_prompts: int = constants.MANUAL_LOGIN_PROMPTS
    staging_dir: str = constants.STAGING_DIR
    temp_dir: str = constants.TEMP_DIR
    selectors: dict = field(default_factory=lambda: {
        "show_more": constants.SHOW_MORE_SELECTORS,
        "leaf_links": constants.LEAF_LINK_SELECTORS,
        "download": constants.DOWNLOAD_SELECTORS,
        "metadata": dict(constants.METADATA_SELECTORS),
    })

    def __post_init__(self):
        # Polling loops advance by these steps
        for name in ("captcha_poll_interval", "captcha_progress_interval", "download_poll_interval"):
            if getattr(self, name) <= 0:
                raise FatalConfigurationError(f"{name} must be positive, got {getattr(self, name)}")

    @property
    def interactive(self):
        """
        A human can only help when the browser window is visible
        """
        return not self.headless


class VisitationLedger:
    """
    ResourceRefs already dispatched in this run. Never persisted, never evicted.
    """

    def __init__(self):
        self._visited = set()

    def __len__(self):
        return len(self._visited)

    def __contains__(self, ref):
        return ref in self._visited

    def has_visited(self, ref):
        return ref in self._visited

    def mark_visited(self, ref):
        self._visited.add(ref)

    def check_and_mark(self, ref):
        """
        Return True if the ref was not visited yet. It is marked either way.
        """
        if ref in self._visited:
            logger.debug(f"Skipping: {ref}")
            return False
        self._visited.add(ref)
        return True


class RunContext:
    """
    Everything one run owns: settings, ledger, session, counters and logs.
    Passed explicitly to every component.
    """

    def __init__(self, settings=None, session=None):
        self.settings = settings or Settings()
        self.ledger = VisitationLedger()
        self.session = session
        self.records = []
        self.pages_processed = 0
        self.uploaded_count = 0
        self.failed_count = 0
        self.placements = []
        self.upload_log = []

    @property
    def rag_documents(self):
        return [placement.rag_document for placement in self.placements]

    def summary(self):
        """
        Counts and success rate for the upload log
        """
        total = self.uploaded_count + self.failed_count
        rate = (self.uploaded_count / total * 100) if total else 0.0
        return {
            "totalProcessed": total,
            "successful": self.uploaded_count,
            "failed": self.failed_count,
            "successRate": f"{rate:.2f}%",
        }


class ContextFilter(logging.Filter):
    """
    Append the asyncio task id, if available, to the log
    """

    def filter(self, record):
        try:
            record.task_id = f"- {asyncio.current_task().get_name()}"
        except RuntimeError:
            record.task_id = ""
        except AttributeError:
            record.task_id = ""
        return True


def config_logger(log_path=constants.LOG_PATH):
    """
    The logger has a file handler and console handler.
    The file handler logs everything (DEBUG).
    The console handler logs INFO.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    log_dir = os.path.dirname(log_path)
    if log_dir and not os.path.exists(log_dir):
        os.makedirs(log_dir)

    file_handler = logging.FileHandler(log_path, mode="a")
    file_handler.setLevel(logging.DEBUG)
    file_format = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s %(task_id)s", datefmt="%H:%M:%S"
    )
    file_handler.setFormatter(file_format)
    file_handler.addFilter(ContextFilter())

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_format = logging.Formatter("%(levelname)s - %(message)s")
    console_handler.setFormatter(console_format)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
