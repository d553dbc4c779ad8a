# Desc: Parse uploader run logs. Deeper analyses performed on most recent (primary) upload log.
#       Failed records of the primary log are written to a retry file the uploader accepts.

# Args: Supply integer to consider N most recent upload logs. Or supply paths to files.


from glob import glob
import json
import logging
import os
import sys

import constants
from records import now_iso, write_json


logger = logging.getLogger(__name__)


def get_options(argv):
    logger.info(f"Args: {argv[1:]}")
    if len(argv) == 1:
        logger.info(f"Using default options")
        num_files = 2
        log_files = glob("upload_log_*.json")

    elif len(argv) == 2 and argv[1].isnumeric():
        logger.info(f"Using number of files")
        num_files = int(argv[1])
        log_files = glob("upload_log_*.json")

    else:
        logger.info(f"Using specific files")
        num_files = len(argv) - 1
        log_files = argv[1:]

    # Timestamped names sort chronologically
    return num_files, sorted(log_files, key=os.path.basename, reverse=True)


def read_upload_logs(num_files, log_files):
    all_upload_log_d = {}
    for log_file in log_files[:num_files]:
        try:
            with open(log_file, "r", encoding="utf8") as f:
                all_upload_log_d[os.path.basename(log_file)] = json.load(f)
                logger.info(f"Using: {log_file}")

        except (OSError, ValueError) as errex:
            logger.warning(f"Cant read {log_file}: {errex}")

    return all_upload_log_d


def get_most_recent_upload_log(all_upload_log_d):
    log_name = list(all_upload_log_d)[0]
    logger.info(f"\n\n ------------ Most recent upload log: {log_name} ------------")
    return all_upload_log_d[log_name]


def get_failures(upload_log_doc):
    return [entry for entry in upload_log_doc.get("uploadLog", []) if entry.get("status") == "failed"]


def build_tally_lists(primary_log):
    """
    Error type: download urls that failed with it
    """
    err_d = {}
    for entry in get_failures(primary_log):
        err_type = entry.get("errorType") or "Unknown"
        err_d.setdefault(err_type, []).append(entry.get("downloadUrl"))
    return err_d


def display_summary(primary_log):
    summary = primary_log.get("summary", {})
    logger.info(f"\nProcessed: {summary.get('totalProcessed', 0)}")
    logger.info(f"Successful: {summary.get('successful', 0)}")
    logger.info(f"Failed: {summary.get('failed', 0)}")
    logger.info(f"Success rate: {summary.get('successRate', '0.00%')}")


def display_histogram_of_errors(name, err_d):
    logger.info(f"\n\t{name} errors:")
    total = 0
    if not err_d:
        logger.info(f"     total:  {total}")
        return

    max_val = max(len(x) for x in err_d.values())  # Most frequent error
    pad_width = max(len(x) for x in err_d)
    for err_type, url_l in sorted(err_d.items(), key=lambda x: len(x[1]), reverse=True):
        error_tally = len(url_l)
        total += error_tally
        bar = "=" * int(error_tally * 100 / max_val)
        logger.info(f"{err_type.ljust(pad_width)}:  {str(error_tally).ljust(4)} {bar}")

    logger.info(f"{'total'.rjust(pad_width)}:  {total}")


def count_logging_levels(log_path=constants.LOG_PATH):
    if not os.path.exists(log_path):
        logger.info(f"\nNo log file at {log_path}")
        return None

    with open(log_path, "r", encoding="utf8") as f:
        log_file = f.read()

    level_counts = {
        "Warning": log_file.count(" - WARNING - "),
        "Error": log_file.count(" - ERROR - "),
        "Critical": log_file.count(" - CRITICAL - "),
    }

    logger.info(f"\n\n\tLogging level counts")
    for level, count in level_counts.items():
        logger.info(f'{(level + ":").ljust(9)} {count}')
    return level_counts


def get_all_failures(all_upload_log_d):
    """
    Failed download urls for each upload log
    """
    fail_l_d = {}
    for log_name, upload_log_doc in all_upload_log_d.items():
        fail_l_d[log_name] = [entry.get("downloadUrl") for entry in get_failures(upload_log_doc)]
    return fail_l_d


def count_failures(fail_l_d):
    logger.info(f"\n\n\n ------------ All upload logs ------------")
    logger.info(f"\nFailures:")
    for log_name, url_l in fail_l_d.items():
        logger.info(f"{log_name}: {len(url_l)}")


def get_recurring_failures(fail_l_d):
    """
    Urls that failed in every upload log considered
    """
    recurring_l = sorted(set.intersection(*map(set, fail_l_d.values())))
    logger.info(f"\nRecurring failures: {len(recurring_l)} \n\n")
    for url in recurring_l:
        logger.debug(f"{url}")
    return recurring_l


def build_retry_document(primary_log):
    """
    Failed records in the uploader input format
    """
    data = [entry["record"] for entry in get_failures(primary_log) if entry.get("record")]
    return {
        "scrapedCount": len(data),
        "scrapedAt": now_iso(),
        "data": data,
    }


def main(argv=None, retry_file=constants.RETRY_FILE):
    argv = sys.argv if argv is None else argv
    num_files, log_files = get_options(argv)
    all_upload_log_d = read_upload_logs(num_files, log_files)
    if not all_upload_log_d:
        logger.info(f"No upload logs have been read. Exiting ...")
        return None

    # Analyse primary upload log only
    primary_log = get_most_recent_upload_log(all_upload_log_d)
    display_summary(primary_log)
    display_histogram_of_errors("Failed", build_tally_lists(primary_log))
    count_logging_levels()

    retry_doc = build_retry_document(primary_log)
    if retry_doc["data"]:
        write_json(retry_file, retry_doc)
        logger.info(f"\n{len(retry_doc['data'])} failed records written to {retry_file}")

    # Analyse all upload logs
    fail_l_d = get_all_failures(all_upload_log_d)
    count_failures(fail_l_d)
    return get_recurring_failures(fail_l_d)


def run():
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    logger.info(f"\n Begin upload log parser")
    if main() is None:
        sys.exit(1)


if __name__ == "__main__":
    run()
