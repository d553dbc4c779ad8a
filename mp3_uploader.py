# Description: Log in, download each discovered MP3 with the authenticated session, and publish it to S3


import asyncio
import enum
import logging
import os
import sys
import time
from datetime import datetime, timezone
from urllib import parse

import aiohttp
import boto3
import enlighten
import timeout_decorator
from bs4 import BeautifulSoup

import constants
from captcha_gate import CaptchaGate
from errors import (
    AssetTooSmallError,
    AuthenticationRequiredError,
    ChallengeTimeoutError,
    DownloadTimeoutError,
    FatalConfigurationError,
    RecordLevelFailure,
    RetrievalError,
    TransientNavigationError,
)
from page_driver import BrowserSession, first_element
from records import RetrievedAsset, StoragePlacement, load_input_document, now_iso, write_json
from run_context import RunContext, Settings, config_logger
from storage_keys import build_object_headers, build_rag_document, derive_storage_key


logger = logging.getLogger(__name__)


class LoginStatus(enum.Enum):
    AUTHENTICATED = "authenticated"
    NOT_AUTHENTICATED = "not_authenticated"
    UNKNOWN = "unknown"


def is_authenticated(status):
    """
    UNKNOWN counts as logged in. Blocking on an unreliable check caused
    more false aborts than it prevented bad downloads.
    """
    return status is not LoginStatus.NOT_AUTHENTICATED


def read_login_status(html):
    """
    Guess the login state from the visible part of the page
    """
    soup = BeautifulSoup(html, "html5lib")
    vis_soup = soup.find("body") or soup

    # Dormant login modals must not count
    for x in vis_soup(["script", "style", "noscript"]):
        x.decompose()
    for x in vis_soup.find_all(style=constants.STYLE_REG):
        x.decompose()
    for x in vis_soup.find_all(type="hidden"):
        x.decompose()
    for x in vis_soup.find_all(class_=constants.CLASS_REG):
        x.decompose()

    if vis_soup.find("input", type="password"):
        return LoginStatus.NOT_AUTHENTICATED

    vis_text = constants.WHITE_REG.sub(" ", vis_soup.get_text(" ")).lower()
    if any(phrase in vis_text for phrase in constants.LOGGED_OUT_PHRASES):
        return LoginStatus.NOT_AUTHENTICATED
    if any(phrase in vis_text for phrase in constants.LOGGED_IN_PHRASES):
        return LoginStatus.AUTHENTICATED

    for anchor_tag in vis_soup.find_all("a", href=True):
        href = anchor_tag["href"].lower()
        if "logout" in href or "signout" in href:
            return LoginStatus.AUTHENTICATED

    return LoginStatus.UNKNOWN


async def prompt_enter(message):
    """
    Block on stdin without blocking the event loop
    """
    await asyncio.to_thread(input, message)


class Authenticator:
    """
    Establishes the logged in browser session once per run.
    Automatic login is tried first, then a human is asked to log in.
    """

    def __init__(self, ctx, driver, credentials=None, prompt=prompt_enter):
        self.ctx = ctx
        self.settings = ctx.settings
        self.driver = driver
        self.credentials = credentials
        self.prompt = prompt
        self.status = LoginStatus.UNKNOWN

    async def check_login_status(self):
        try:
            html = await self.driver.content()
        except Exception as errex:
            logger.warning(f"Could not check login status: {errex!r}")
            return LoginStatus.UNKNOWN

        status = read_login_status(html)
        logger.debug(f"Login status: {status.value}")
        return status

    async def login(self):
        """
        Return the login status. Raise AuthenticationRequiredError if nobody could log in.
        """
        try:
            await self.driver.navigate(self.settings.base_url)
        except TransientNavigationError as errex:
            raise AuthenticationRequiredError(f"Cant load {self.settings.base_url}: {errex}") from errex

        try:
            self.status = await self.attempt_login()
        except AuthenticationRequiredError as errex:
            logger.warning(f"{errex}")
            self.status = await self.handle_manual_login()

        logger.info(f"Successfully authenticated ({self.status.value})")
        return self.status

    async def attempt_login(self):
        """
        Fill in the login form with the configured credentials
        """
        if not self.credentials:
            raise AuthenticationRequiredError("No credentials provided - manual login needed")

        logger.info(f"Attempting automatic login ...")
        try:
            login_link = await first_element(self.driver, constants.LOGIN_LINK_SELECTORS)
            if login_link is None:
                raise AuthenticationRequiredError("Could not find login link")
            await self.driver.activate(login_link)

            email_input = await first_element(self.driver, constants.EMAIL_INPUT_SELECTORS)
            password_input = await first_element(self.driver, constants.PASSWORD_INPUT_SELECTORS)
            submit = await first_element(self.driver, constants.SUBMIT_SELECTORS)
            if email_input is None or password_input is None or submit is None:
                raise AuthenticationRequiredError("Could not find login form")

            await self.driver.fill(email_input, self.credentials["email"])
            await self.driver.fill(password_input, self.credentials["password"])
            await self.driver.activate(submit)

        except AuthenticationRequiredError:
            raise
        except Exception as errex:
            raise AuthenticationRequiredError(f"Automatic login failed: {errex!r}") from errex

        status = await self.check_login_status()
        if not is_authenticated(status):
            raise AuthenticationRequiredError("Automatic login failed")
        logger.info(f"Automatic login successful")
        return status

    async def handle_manual_login(self):
        """
        Pause until a human has logged in through the browser window
        """
        if not self.settings.interactive:
            raise AuthenticationRequiredError("Running headless - cannot log in manually")

        for prompt_num in range(1, self.settings.manual_login_prompts + 1):
            logger.warning(f"MANUAL LOGIN REQUIRED ({prompt_num}/{self.settings.manual_login_prompts})")
            logger.warning(f"Log in through the open browser window, then press ENTER here. Keep the window open")
            try:
                await self.prompt("Press ENTER after logging in manually: ")
            except EOFError as errex:
                raise AuthenticationRequiredError("No terminal available for manual login") from errex

            status = await self.check_login_status()
            if is_authenticated(status):
                if status is LoginStatus.UNKNOWN:
                    logger.warning(f"Login status unclear, but proceeding with downloads")
                return status
            logger.warning(f"Still not logged in")

        raise AuthenticationRequiredError("Manual login not completed")

    async def probe_session(self, record):
        """
        Visit the first record's page and report whether downloads should work
        """
        try:
            await self.driver.navigate(record.source_page_ref)
            status = await self.check_login_status()
        except TransientNavigationError as errex:
            logger.warning(f"Authentication test inconclusive: {errex}")
            return LoginStatus.UNKNOWN

        if status is LoginStatus.NOT_AUTHENTICATED:
            logger.warning(f"Authentication test shows login required - but will continue anyway")
        else:
            logger.info(f"Authentication test passed ({status.value})")
        return status


def snapshot_staging(staging_dir):
    """
    Name: (mtime, size) for every file in the staging dir
    """
    snap = {}
    for name in os.listdir(staging_dir):
        path = os.path.join(staging_dir, name)
        if os.path.isfile(path):
            stat = os.stat(path)
            snap[name] = (stat.st_mtime_ns, stat.st_size)
    return snap


def newest_staged_file(staging_dir, before):
    """
    Return (path, size) of the newest MP3 that is new or changed since the
    snapshot, or None
    """
    newest = None
    for name, (mtime, size) in snapshot_staging(staging_dir).items():
        lower_name = name.lower()
        if lower_name.endswith(constants.PARTIAL_SUFFIXES):
            continue
        if not (lower_name.endswith(constants.STAGED_SUFFIXES) or constants.STAGED_MARKER in lower_name):
            continue
        if before.get(name) == (mtime, size):
            continue
        if newest is None or mtime > newest[0]:
            newest = (mtime, os.path.join(staging_dir, name), size)

    if newest is None:
        return None
    return newest[1], newest[2]


class RequesterBase:
    """
    Fetches one record's file to a target path
    """

    name = "base"

    def __init__(self, retriever):
        self.retriever = retriever
        self.settings = retriever.settings
        self.driver = retriever.driver

    async def fetch(self, record, target_path):
        raise NotImplementedError


class PwReq(RequesterBase):
    """
    Let the logged in browser download the file into the staging dir.
    Some files are only served after the source page has set its cookies.
    """

    name = "pw"

    async def fetch(self, record, target_path):
        staging_dir = self.retriever.staging_dir
        before = snapshot_staging(staging_dir)

        await self.driver.navigate(record.download_ref)
        await self.driver.navigate(record.source_page_ref)
        await self.retriever.gate.pass_through(self.driver, record.source_page_ref)

        staged = newest_staged_file(staging_dir, before)
        if staged is None or staged[1] <= self.settings.min_file_bytes:
            trigger = await first_element(self.driver, self.settings.selectors["download"])
            if trigger is None:
                raise TransientNavigationError(f"No download link on page: {record.source_page_ref}")
            await self.driver.activate(trigger)
            logger.info(f"Download triggered, waiting for file ...")

        staged_path = await self.wait_for_staged_file(before)
        os.replace(staged_path, target_path)

    async def wait_for_staged_file(self, before):
        """
        Poll the staging dir until a big enough file appears
        """
        waited = 0
        too_small = None
        while waited < self.settings.download_max_wait:
            await asyncio.sleep(self.settings.download_poll_interval)
            waited += self.settings.download_poll_interval

            staged = newest_staged_file(self.retriever.staging_dir, before)
            if staged is None:
                continue
            staged_path, size = staged
            if size > self.settings.min_file_bytes:
                logger.debug(f"Staged file ready: {staged_path} {size}")
                return staged_path
            too_small = size

        if too_small is not None:
            raise AssetTooSmallError(too_small, self.settings.min_file_bytes)
        raise DownloadTimeoutError("Download timeout or file not found")


class StaticReq(RequesterBase):
    """
    The aiohttp requester. Used for the last attempt.
    Carries the browser session cookies.
    """

    name = "static"

    async def fetch(self, record, target_path):
        cookies = await self.driver.cookies()
        timeout = aiohttp.ClientTimeout(total=constants.static_timeout)
        headers = {"User-Agent": constants.USER_AGENT_S, "Referer": record.source_page_ref}

        logger.info(f"begin req static {record.download_ref}")
        try:
            async with aiohttp.ClientSession(timeout=timeout, cookies=cookies) as session:
                async with session.get(record.download_ref, headers=headers) as resp:
                    if resp.status != 200:
                        raise TransientNavigationError(f"{resp.status} {resp.reason} {record.download_ref}")
                    body = await resp.read()
        except asyncio.TimeoutError as errex:
            raise TransientNavigationError(f"Timeout: {record.download_ref}") from errex
        except aiohttp.ClientError as errex:
            raise TransientNavigationError(f"Requester error: {errex} {record.download_ref}") from errex

        if len(body) <= self.settings.min_file_bytes:
            raise AssetTooSmallError(len(body), self.settings.min_file_bytes)

        with open(target_path, "wb") as f:
            f.write(body)
        logger.info(f"end req static {record.download_ref}")


class Retriever:
    """
    Authenticated retrieval with a fixed number of whole-sequence retries
    """

    def __init__(self, ctx, driver, gate=None):
        self.ctx = ctx
        self.settings = ctx.settings
        self.driver = driver
        self.gate = gate or CaptchaGate(ctx.settings)
        self.staging_dir = ctx.settings.staging_dir
        if not os.path.exists(self.staging_dir):
            os.makedirs(self.staging_dir)

    def choose_requester(self, attempt):
        """
        Choose the requester based on the attempt number
        """
        last_attempt = attempt == self.settings.retry_attempts
        if last_attempt and attempt > 1 and self.settings.static_fallback and hasattr(self.driver, "cookies"):
            return StaticReq(self)
        return PwReq(self)

    async def retrieve(self, record, target_path):
        """
        Return a RetrievedAsset. Raise RetrievalError when every attempt failed.
        """
        last_error = None
        for attempt in range(1, self.settings.retry_attempts + 1):
            requester = self.choose_requester(attempt)
            logger.info(f"Attempting download (try {attempt}, {requester.name}): {record.download_ref}")
            try:
                await requester.fetch(record, target_path)
                return self.load_asset(record, target_path)

            except (TransientNavigationError, ChallengeTimeoutError, AssetTooSmallError, OSError) as errex:
                last_error = errex
                logger.warning(f"Retry {attempt} failed: {errex}")
                self.discard(target_path)
                if attempt < self.settings.retry_attempts:
                    await asyncio.sleep(self.settings.retry_delay)

            except Exception as errex:
                last_error = errex
                logger.exception(f"__error retry {attempt} failed: {record.download_ref}")
                self.discard(target_path)
                if attempt < self.settings.retry_attempts:
                    await asyncio.sleep(self.settings.retry_delay)

        raise RetrievalError(
            f"All {self.settings.retry_attempts} download attempts failed: {last_error}"
        ) from last_error

    def discard(self, target_path):
        if os.path.exists(target_path):
            os.remove(target_path)

    def load_asset(self, record, target_path):
        with open(target_path, "rb") as f:
            local_bytes = f.read()
        return RetrievedAsset(record, local_bytes, self.settings.min_file_bytes)


def load_storage_config(environ=None):
    """
    Read the S3 settings. Missing values are fatal before anything starts.
    """
    environ = os.environ if environ is None else environ
    missing = [
        name
        for name in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "S3_BUCKET_NAME")
        if not environ.get(name, "").strip('" ')
    ]
    if missing:
        raise FatalConfigurationError(f"Missing storage configuration: {', '.join(missing)}")

    return {
        "bucket": environ["S3_BUCKET_NAME"],
        "region": environ.get("AWS_REGION") or constants.AWS_REGION_DEFAULT,
    }


def load_credentials(environ=None):
    """
    Site credentials are optional. Without them the login is manual.
    """
    environ = os.environ if environ is None else environ
    email = environ.get("CHABAD_EMAIL", "").strip('" ')
    password = environ.get("CHABAD_PASSWORD", "").strip('" ')
    if email and password:
        return {"email": email, "password": password}
    logger.warning(f"No site credentials provided - will need manual login")
    return None


class S3Store:
    """
    Object store backed by an S3 bucket
    """

    def __init__(self, bucket, region, client=None):
        self.bucket = bucket
        self.region = region
        self.client = client or boto3.client("s3", region_name=region)
        logger.info(f"S3 bucket: {bucket} (region: {region})")

    def object_url(self, key):
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{parse.quote(key)}"

    @timeout_decorator.timeout(constants.upload_timeout)
    def put(self, key, body, headers):
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=constants.CONTENT_MIME,
            Metadata=headers,
        )
        return {"url": self.object_url(key), "key": key}


class Mp3Uploader:
    """
    Processes records one at a time, end to end.
    A failed record is logged and never stops the next one.
    """

    def __init__(self, ctx, retriever, store, bucket, progress_bar=None):
        self.ctx = ctx
        self.settings = ctx.settings
        self.retriever = retriever
        self.store = store
        self.bucket = bucket
        self.progress_bar = progress_bar

    async def process_all(self, records):
        logger.info(f"Starting authenticated upload of {len(records)} MP3s to S3 bucket {self.bucket}")

        for index, record in enumerate(records, start=1):
            try:
                await self.process_record(record, index)
            except RecordLevelFailure:
                logger.info(f"Continuing with next MP3 ...")

            logger.info(f"Progress: {index}/{len(records)} processed")
            logger.info(f"Uploaded: {self.ctx.uploaded_count}, Failed: {self.ctx.failed_count}")
            self.update_progress_bar()

            if index < len(records) and self.settings.delay_between_records:
                await asyncio.sleep(self.settings.delay_between_records)

    async def process_record(self, record, index):
        """
        Retrieve, place, upload and describe one record.
        Return the StoragePlacement or raise RecordLevelFailure.
        """
        title = record.title_or_default()
        temp_path = os.path.join(self.settings.temp_dir, f"temp_{index}_{int(time.time() * 1000)}.mp3")
        logger.info(f"[{index}] Processing: {title}")

        try:
            asset = await self.retriever.retrieve(record, temp_path)
            logger.info(f"[{index}] Downloaded: {asset.byte_length / 1024 / 1024:.2f} MB")

            key = derive_storage_key(record, index)
            uploaded_at = now_iso()
            logger.info(f"[{index}] Uploading to S3: {key}")
            result = self.store.put(key, asset.local_bytes, build_object_headers(record, uploaded_at))
            asset.release()

            rag_document = build_rag_document(record, index, self.bucket, result["key"], result["url"], uploaded_at)
            placement = StoragePlacement(key=key, record=record, rag_document=rag_document)
            self.ctx.placements.append(placement)
            self.ctx.upload_log.append(
                {
                    "index": index,
                    "title": record.metadata.title,
                    "s3Key": key,
                    "s3Url": result["url"],
                    "fileSize": asset.byte_length,
                    "status": "success",
                    "uploadedAt": uploaded_at,
                }
            )
            self.ctx.uploaded_count += 1
            logger.info(f"[{index}] SUCCESS: {title}")
            return placement

        except FatalConfigurationError:
            raise

        except Exception as errex:
            logger.error(f"[{index}] FAILED: {title} - {errex}")
            self.ctx.upload_log.append(
                {
                    "index": index,
                    "title": record.metadata.title,
                    "downloadUrl": record.download_ref,
                    "videoUrl": record.source_page_ref,
                    "status": "failed",
                    "error": str(errex),
                    "errorType": type(errex).__name__,
                    "failedAt": now_iso(),
                    "record": record.to_dict(),
                }
            )
            self.ctx.failed_count += 1
            raise RecordLevelFailure(record, index, errex) from errex

        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)

    def update_progress_bar(self):
        if self.progress_bar is None:
            return
        self.progress_bar.count = self.ctx.uploaded_count + self.ctx.failed_count
        self.progress_bar.refresh()


def save_run_artifacts(ctx, bucket, out_dir=".", timestamp=None):
    """
    Write the RAG metadata, the upload log and a simple key mapping
    """
    timestamp = timestamp or datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    if not os.path.exists(out_dir):
        os.makedirs(out_dir)

    rag_documents = ctx.rag_documents
    paths = {
        "rag_metadata": os.path.join(out_dir, f"rag_metadata_{timestamp}.json"),
        "upload_log": os.path.join(out_dir, f"upload_log_{timestamp}.json"),
        "mapping": os.path.join(out_dir, f"mp3_s3_mapping_{timestamp}.json"),
    }

    write_json(
        paths["rag_metadata"],
        {
            "generatedAt": now_iso(),
            "totalFiles": len(rag_documents),
            "s3Bucket": bucket,
            "s3Prefix": constants.S3_PREFIX,
            "metadata": rag_documents,
        },
    )
    write_json(paths["upload_log"], {"summary": ctx.summary(), "uploadLog": ctx.upload_log})
    write_json(
        paths["mapping"],
        [
            {
                "id": doc["id"],
                "title": doc["content"]["title"],
                "author": doc["content"]["author"],
                "s3Url": doc["file"]["s3Url"],
                "s3Key": doc["file"]["s3Key"],
            }
            for doc in rag_documents
        ],
    )

    for name, path in paths.items():
        logger.info(f"{name} saved to: {path}")
    return paths


def display_summary(ctx):
    summary = ctx.summary()
    logger.info(f"  Upload complete  ".center(70, "="))
    logger.info(f"Successfully uploaded: {summary['successful']} MP3s")
    logger.info(f"Failed uploads: {summary['failed']} MP3s")
    logger.info(f"Success rate: {summary['successRate']}")


def create_progress_bar(total):
    manager = enlighten.get_manager()
    return manager.counter(total=total, desc="MP3s", unit="files", leave=False)


async def main(input_file, settings=None):
    """
    Check configuration, log in, then process every record sequentially
    """
    storage_conf = load_storage_config()
    records = load_input_document(input_file)

    ctx = RunContext(settings or Settings())
    store = S3Store(storage_conf["bucket"], storage_conf["region"])
    browser = BrowserSession(ctx.settings)
    ctx.session = browser

    try:
        driver = await browser.start()
        gate = CaptchaGate(ctx.settings)
        authenticator = Authenticator(ctx, driver, credentials=load_credentials())
        await authenticator.login()
        if records:
            await authenticator.probe_session(records[0])

        uploader = Mp3Uploader(
            ctx, Retriever(ctx, driver, gate), store, storage_conf["bucket"], create_progress_bar(len(records))
        )
        await uploader.process_all(records)

    finally:
        await browser.close()
        if ctx.upload_log:
            save_run_artifacts(ctx, storage_conf["bucket"])
        display_summary(ctx)

    return ctx


def run():
    config_logger()
    input_file = sys.argv[1] if len(sys.argv) > 1 else constants.OUTPUT_FILE
    logger.info(f"Loading scraped MP3 data from: {input_file}")
    if not os.path.exists(input_file):
        logger.critical(f"Input file not found: {input_file}")
        logger.info(f"Usage: python mp3_uploader.py [input_file.json]")
        sys.exit(1)

    try:
        asyncio.run(main(input_file))
    except (FatalConfigurationError, AuthenticationRequiredError) as errex:
        logger.critical(f"Fatal error: {errex}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning(f"Interrupted. The upload log reflects the completed records")
        sys.exit(130)


if __name__ == "__main__":
    run()
