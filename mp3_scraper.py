# Description: Crawl the site sections and collect MP3 download links with their metadata


import asyncio
import logging
import sys
from datetime import datetime

import enlighten

import constants
from captcha_gate import CaptchaGate
from errors import ChallengeTimeoutError, TransientNavigationError
from page_driver import BrowserSession, all_matches, first_match
from records import ContentRecord, RecordMetadata, normalize_ref, now_iso, write_json
from run_context import RunContext, Settings, config_logger


logger = logging.getLogger(__name__)

SECTION = "section"
LEAF = "leaf"


class Mp3Scraper:
    """
    Walks the site with an explicit worklist of (ref, depth, kind).

    Section pages either link to more sections ("show more") or list leaf
    pages. Leaf pages either carry a download link or link to further leaf
    pages. Every ref passes the ledger before it is navigated to and the
    CAPTCHA gate after.
    """

    def __init__(self, ctx, driver, gate=None, progress_bar=None):
        self.ctx = ctx
        self.settings = ctx.settings
        self.driver = driver
        self.gate = gate or CaptchaGate(ctx.settings)
        self.progress_bar = progress_bar

    async def crawl_sections(self, root):
        """
        Recursive "expand" strategy. Follow every "show more" link depth first.
        """
        logger.info(f"Starting scraper from: {root}")
        await self.run_worklist([(normalize_ref(root, self.settings.base_url), 0, SECTION)])
        logger.info(f"Section crawl complete: {len(self.ctx.records)} MP3s found")

    async def crawl_pages(self, root):
        """
        Pagination strategy.
        Phase 1 collects leaf links from every page by following "next".
        Phase 2 visits each collected leaf page.
        """
        root = normalize_ref(root, self.settings.base_url)
        logger.info(f"Starting paginated scraping: {root}")
        candidates = await self.collect_paginated_links(root)
        logger.info(f"Found {len(candidates)} total video URLs across {self.ctx.pages_processed} pages")

        await self.run_worklist([(ref, 1, LEAF) for ref in reversed(candidates)])
        logger.info(f"Paginated crawl complete: {len(self.ctx.records)} MP3s found")

    async def collect_paginated_links(self, root):
        """
        Return the leaf links of every page reachable through "next", in order
        """
        candidates = {}
        if not self.ctx.ledger.check_and_mark(root):
            return []

        try:
            await self.load(root, 0)
        except (TransientNavigationError, ChallengeTimeoutError) as errex:
            logger.error(f"Failed to load start page: {errex}")
            return []

        pages = 0
        while pages < self.settings.max_pages:
            links = await self.collect_links(self.settings.selectors["leaf_links"], constants.LEAF_LINK_MARKER)
            pages += 1
            self.ctx.pages_processed += 1
            for ref in links:
                candidates[ref] = None
            logger.info(f"Page {pages}: {len(links)} video links, {len(candidates)} total")
            self.update_progress_bar()

            next_button = await find_next_affordance(self.driver)
            if next_button is None:
                logger.info(f"No more pages to process (next button disabled or missing)")
                break

            try:
                await self.driver.activate(next_button)
                await asyncio.sleep(self.settings.delay_between_pages)
                page_ref = normalize_ref(await self.driver.current_url(), self.settings.base_url)
                if not self.ctx.ledger.check_and_mark(page_ref):
                    logger.warning(f"Next page already visited, stopping: {page_ref}")
                    break
                await self.gate.pass_through(self.driver, page_ref)
            except (TransientNavigationError, ChallengeTimeoutError) as errex:
                logger.warning(f"Failed to navigate to next page, stopping: {errex}")
                break
            except Exception:
                logger.exception(f"__error clicking next button")
                break

        else:
            logger.warning(f"Reached maximum page limit ({self.settings.max_pages})")

        return list(candidates)

    async def run_worklist(self, stack):
        """
        Process (ref, depth, kind) items until none are left.
        A failed page is logged and dropped; its siblings still run.
        """
        while stack:
            ref, depth, kind = stack.pop()

            if kind == SECTION and depth > self.settings.max_depth:
                logger.warning(f"Maximum depth {self.settings.max_depth} reached for URL: {ref}")
                continue

            if not self.ctx.ledger.check_and_mark(ref):
                logger.info(f"URL already visited: {ref}")
                continue

            try:
                if kind == SECTION:
                    children = await self.process_section(ref, depth)
                else:
                    children = await self.process_leaf(ref, depth)

            except (TransientNavigationError, ChallengeTimeoutError) as errex:
                logger.warning(f"Skipping {ref}: {errex}")
                continue
            except Exception:
                logger.exception(f"__error processing URL: {ref}")
                continue

            finally:
                self.update_progress_bar()

            # Reversed so the first link on the page is popped first
            stack.extend(reversed(children))

    async def load(self, ref, delay):
        """
        Rate limit, navigate, then pass the CAPTCHA gate
        """
        if delay:
            await asyncio.sleep(delay)
        await self.driver.navigate(ref)
        await self.gate.pass_through(self.driver, ref)

    async def process_section(self, ref, depth):
        logger.info(f"{'  ' * depth}Visiting: {ref}")
        await self.load(ref, self.settings.delay_between_pages)

        more_refs = await self.collect_links(self.settings.selectors["show_more"])
        if more_refs:
            logger.info(f"{'  ' * depth}Found {len(more_refs)} 'view all' buttons")
            return [(more_ref, depth + 1, SECTION) for more_ref in more_refs]

        leaf_refs = await self.collect_links(self.settings.selectors["leaf_links"])
        logger.info(f"{'  ' * depth}No 'view all' buttons. Found {len(leaf_refs)} video links")
        return [(leaf_ref, depth + 1, LEAF) for leaf_ref in leaf_refs]

    async def process_leaf(self, ref, depth):
        """
        Extract the record, or fall back to the leaf links nested in this page
        """
        logger.info(f"{'  ' * depth}Checking video page: {ref}")
        await self.load(ref, self.settings.delay_between_downloads)

        record = await extract_record(self.driver, ref, self.settings)
        if record:
            self.ctx.records.append(record)
            logger.info(f"{'  ' * depth}Saved MP3 data: {record.title_or_default()}")
            return []

        logger.info(f"{'  ' * depth}No MP3 download link found, checking for nested video links ...")
        nested = [
            nested_ref
            for nested_ref in await self.collect_links(self.settings.selectors["leaf_links"])
            if nested_ref != ref and not self.ctx.ledger.has_visited(nested_ref)
        ]
        logger.info(f"{'  ' * depth}Found {len(nested)} nested video link(s)")
        return [(nested_ref, depth + 1, LEAF) for nested_ref in nested]

    async def collect_links(self, patterns, marker=None):
        """
        Return the unique absolute hrefs matched by the patterns, in page order
        """
        found = {}
        for pattern in patterns:
            try:
                elements = await self.driver.find_all(pattern)
                for element in elements:
                    ref = normalize_ref(await self.driver.attribute_of(element, "href"), self.settings.base_url)
                    if not ref:
                        continue
                    if marker and marker not in ref:
                        continue
                    found[ref] = None
            except Exception as errex:
                logger.warning(f"Link extraction failed for {pattern}: {errex!r}")
        return list(found)

    def update_progress_bar(self):
        if self.progress_bar is None:
            return
        self.progress_bar.count = len(self.ctx.ledger)
        self.progress_bar.refresh()


async def extract_record(driver, page_ref, settings):
    """
    Return a ContentRecord for the current page, or None if it has no download link
    """

    async def get_href(element):
        return await driver.attribute_of(element, "href")

    href = await first_match(driver, settings.selectors["download"], get_href)
    download_ref = normalize_ref(href, settings.base_url)
    if not download_ref:
        return None

    metadata = await extract_metadata(driver, settings.selectors["metadata"])
    return ContentRecord(source_page_ref=page_ref, download_ref=download_ref, metadata=metadata)


async def extract_metadata(driver, meta_selectors):
    """
    Each field takes the first selector with text. Missing fields stay empty.
    """
    fields = {}
    for name in ("title", "author", "podcast", "synopsis"):
        fields[name] = await first_match(driver, meta_selectors.get(name, ()), driver.text_of)

    topics = await all_matches(driver, meta_selectors.get("topics", ()), driver.text_of)
    return RecordMetadata(topics=tuple(topics), **fields)


async def find_next_affordance(driver):
    """
    Return the element that leads to the next page.
    None if there is no next button or it is disabled.
    """
    try:
        images = await driver.find_all(constants.NEXT_PAGE_IMG_SELECTOR)
        if images:
            img_class = await driver.attribute_of(images[0], "class") or ""
            disabled = "disabled" in img_class.split()
            logger.info(f"Next button check: exists=True {disabled=}")
            return None if disabled else images[0]

        for selector in constants.NEXT_PAGE_TEXT_SELECTORS:
            for link in await driver.find_all(selector):
                link_text = (await driver.text_of(link) or "").lower()
                if any(word in link_text for word in constants.NEXT_PAGE_WORDS):
                    logger.info(f"Next button check: text link {link_text.strip()}")
                    return link

    except Exception as errex:
        logger.warning(f"Error checking next button: {errex!r}")

    return None


def create_progress_bar(desc, unit):
    manager = enlighten.get_manager()
    return manager.counter(desc=desc, unit=unit, leave=False)


def save_results(ctx, output_file, start_url, paginate):
    """
    Write the discovery document consumed by the uploader
    """
    results = {
        "scrapedCount": len(ctx.records),
        "startUrl": start_url,
        "scrapedAt": now_iso(),
        "data": [record.to_dict() for record in ctx.records],
    }
    if paginate:
        results["pagesProcessed"] = ctx.pages_processed

    write_json(output_file, results)
    logger.info(f"Successfully saved {len(ctx.records)} MP3 entries to {output_file}")


def get_options(argv):
    """
    Args: [start_url] [--paginate] [--output=path]
    """
    paginate = "--paginate" in argv[1:]
    output_file = constants.OUTPUT_FILE
    urls = []
    for arg in argv[1:]:
        if arg.startswith("--output="):
            output_file = arg.split("=", 1)[1]
        elif not arg.startswith("--"):
            urls.append(arg)

    if urls:
        start_url = urls[0]
    elif paginate:
        start_url = constants.PAGINATED_START_URL
    else:
        start_url = constants.START_URL

    logger.info(f"Args: {start_url=} {paginate=} {output_file=}")
    return start_url, paginate, output_file


async def main(start_url, paginate, output_file, settings=None):
    """
    Start the browser, crawl, and always save what was found
    """
    ctx = RunContext(settings or Settings())
    browser = BrowserSession(ctx.settings)
    ctx.session = browser
    try:
        driver = await browser.start()
        scraper = Mp3Scraper(ctx, driver, progress_bar=create_progress_bar("Pages", "pages"))
        if paginate:
            await scraper.crawl_pages(start_url)
        else:
            await scraper.crawl_sections(start_url)
    finally:
        save_results(ctx, output_file, start_url, paginate)
        await browser.close()
    return ctx


def display_stats(start_time, ctx):
    duration = datetime.now() - start_time
    logger.info(f"\n\nPages checked = {len(ctx.ledger)}")
    logger.info(f"MP3s found = {len(ctx.records)}")
    logger.info(f"Duration = {round(duration.seconds / 60)} minutes")


def run():
    start_time = datetime.now()
    config_logger()
    start_url, paginate, output_file = get_options(sys.argv)

    try:
        ctx = asyncio.run(main(start_url, paginate, output_file))
    except KeyboardInterrupt:
        logger.warning(f"Interrupted. Partial results were saved to {output_file}")
        sys.exit(130)

    logger.info(f"  Scrape complete  ".center(70, "="))
    display_stats(start_time, ctx)


if __name__ == "__main__":
    run()
