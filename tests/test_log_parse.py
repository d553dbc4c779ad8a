import json

import log_parse


def failure(n, err_type="RetrievalError"):
    download_url = f"https://example.org/{n}.mp3"
    return {
        "index": n,
        "title": f"Lesson {n}",
        "downloadUrl": download_url,
        "videoUrl": f"https://example.org/v{n}",
        "status": "failed",
        "error": "All 3 download attempts failed",
        "errorType": err_type,
        "failedAt": "2025-10-29T19:45:12+00:00",
        "record": {"videoUrl": f"https://example.org/v{n}", "downloadUrl": download_url, "metadata": {}},
    }


def write_upload_log(path, entries):
    path.write_text(json.dumps({"summary": {"totalProcessed": len(entries)}, "uploadLog": entries}), encoding="utf8")
    return str(path)


def test_tally_by_error_type():
    primary = {"uploadLog": [failure(1), failure(2, "TimeoutError"), failure(3), {"index": 4, "status": "success"}]}

    err_d = log_parse.build_tally_lists(primary)

    assert sorted(err_d) == ["RetrievalError", "TimeoutError"]
    assert len(err_d["RetrievalError"]) == 2


def test_histogram_handles_no_failures():
    log_parse.display_histogram_of_errors("Failed", {})


def test_main_writes_retry_file_and_finds_recurring(tmp_path):
    older = write_upload_log(tmp_path / "upload_log_2025-10-28T10-00-00.json", [failure(1), failure(2)])
    newer = write_upload_log(
        tmp_path / "upload_log_2025-10-29T10-00-00.json",
        [failure(2), failure(3), {"index": 1, "status": "success"}],
    )
    retry_file = tmp_path / "retry_records.json"

    recurring = log_parse.main(["log_parse.py", older, newer], retry_file=str(retry_file))

    assert recurring == ["https://example.org/2.mp3"]
    retry_doc = json.loads(retry_file.read_text(encoding="utf8"))
    assert retry_doc["scrapedCount"] == 2
    assert [rec["downloadUrl"] for rec in retry_doc["data"]] == ["https://example.org/2.mp3", "https://example.org/3.mp3"]


def test_main_without_logs(tmp_path):
    assert log_parse.main(["log_parse.py", str(tmp_path / "missing.json")], retry_file=str(tmp_path / "r.json")) is None


def test_get_options_number_of_files():
    num_files, _ = log_parse.get_options(["log_parse.py", "5"])
    assert num_files == 5
