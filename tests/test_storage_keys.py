from records import ContentRecord, RecordMetadata
from storage_keys import (
    build_object_headers,
    build_rag_document,
    derive_storage_key,
    sanitize_header_value,
    sanitize_title,
)


SOURCE = "https://www.chabad.org/multimedia/video_cdo/aid/4886452/jewish/Bereishit.htm"
DOWNLOAD = "https://www.chabad.org/multimedia/filedownload_cdo/aid/4886452/jewish/Bereishit.mp3"


def make_record(title="Rabbi Gordon: Bereishit", source=SOURCE, **meta):
    return ContentRecord(
        source_page_ref=source,
        download_ref=DOWNLOAD,
        metadata=RecordMetadata(title=title, **meta),
        discovered_at="2025-10-29T19:45:12+00:00",
    )


def test_storage_key_example():
    key = derive_storage_key(make_record(), 1)

    assert key == "rabbi-gordon/rabbi-gordon-bereishit/4886452/0001-rabbi-gordon-bereishit.mp3"


def test_storage_key_is_deterministic():
    record = make_record()

    assert derive_storage_key(record, 12) == derive_storage_key(record, 12)
    assert derive_storage_key(record, 12).split("/")[-1].startswith("0012-")


def test_storage_key_content_type_and_missing_id():
    tanya = make_record("Lesson 5", source="https://www.chabad.org/library/tanya/tanya_cdo/aid/983056/jewish/Lesson-5.htm")
    other = make_record("Lesson 5", source="https://www.chabad.org/about.htm")

    assert derive_storage_key(tanya, 3) == "tanya/lesson-5/983056/0003-lesson-5.mp3"
    assert derive_storage_key(other, 3) == "other/lesson-5/unknown/0003-lesson-5.mp3"


def test_sanitize_title():
    assert sanitize_title("Shabbat  Shalom! (Part 2)", 100) == "shabbat-shalom-part-2"
    assert sanitize_title("A" * 120, 80) == "a" * 80
    assert sanitize_title(None, 80) == "untitled"
    assert sanitize_title("!!!", 80) == "untitled"


def test_sanitize_header_value():
    assert sanitize_header_value("  Ba’al Shem Tov א ") == "Baal Shem Tov"
    assert sanitize_header_value(None) == ""
    assert len(sanitize_header_value("x" * 5000)) == 1024


def test_object_headers_are_ascii():
    record = make_record("Parsha – Noach", author="Rabbi Gordon", topics=("Noach", "Torah"))
    headers = build_object_headers(record, "2025-10-30T00:00:00+00:00")

    assert headers["original-title"] == "Parsha  Noach"
    assert headers["topics"] == "Noach,Torah"
    assert headers["source-url"] == SOURCE
    assert all(value.isascii() for value in headers.values())


def test_rag_document():
    record = make_record(author="Rabbi Gordon", topics=("Bereishit",))
    key = derive_storage_key(record, 1)
    doc = build_rag_document(record, 1, "bucket", key, f"https://bucket.s3.us-east-2.amazonaws.com/{key}")

    assert doc["id"] == "chabad-mp3-0001"
    assert doc["content"]["description"] == "Audio class by Rabbi Gordon on Bereishit"
    assert doc["file"]["fileName"] == "0001-rabbi-gordon-bereishit.mp3"
    assert doc["source"]["originalUrl"] == SOURCE
    assert doc["search"]["searchableText"] == "rabbi gordon: bereishit rabbi gordon bereishit"


def test_rag_document_defaults():
    doc = build_rag_document(make_record(), 2, "bucket", "k", "u")

    assert doc["content"]["description"] == "Audio class by Unknown on Torah topics"
    assert doc["content"]["topics"] == []
