import json

import pytest

from errors import AssetTooSmallError
from records import ContentRecord, RecordMetadata, RetrievedAsset, load_input_document, normalize_ref


def test_normalize_ref():
    base = "https://example.org"

    assert normalize_ref("/a/b.htm#frag", base) == "https://example.org/a/b.htm"
    assert normalize_ref("  https://other.org/x  ", base) == "https://other.org/x"
    assert normalize_ref("   ", base) is None
    assert normalize_ref(None, base) is None


def test_metadata_only_writes_found_fields():
    meta = RecordMetadata(title="Noach", topics=("Torah",))

    assert meta.to_dict() == {"title": "Noach", "topics": ["Torah"]}


def test_record_from_scrape_document():
    record = ContentRecord.from_dict(
        {
            "videoUrl": "https://example.org/v",
            "downloadUrl": "https://example.org/d.mp3",
            "metadata": {"title": "Noach", "author": "Rabbi Gordon", "topics": ["Torah", "Parsha"]},
            "scrapedAt": "2025-10-29T19:45:12.000Z",
        }
    )

    assert record.metadata.topics == ("Torah", "Parsha")
    assert record.title_or_default() == "Noach"
    assert record.to_dict()["scrapedAt"] == "2025-10-29T19:45:12.000Z"


def test_record_without_title():
    record = ContentRecord(source_page_ref="https://example.org/v", download_ref="https://example.org/d.mp3")

    assert record.title_or_default() == "Unknown Title"
    assert record.discovered_at


def test_asset_at_threshold_is_rejected():
    record = ContentRecord(source_page_ref="v", download_ref="d")

    with pytest.raises(AssetTooSmallError):
        RetrievedAsset(record, b"x" * 1000, 1000)
    with pytest.raises(AssetTooSmallError):
        RetrievedAsset(record, b"x" * 500, 1000)

    asset = RetrievedAsset(record, b"x" * 1001, 1000)
    assert asset.byte_length == 1001
    asset.release()
    assert asset.local_bytes == b""


def test_load_input_document_skips_malformed_entries(tmp_path):
    path = tmp_path / "chunk.json"
    path.write_text(
        json.dumps(
            {
                "chunkNumber": 2,
                "totalChunks": 3,
                "startIndex": 50,
                "endIndex": 51,
                "originalScrapedAt": "2025-10-29T19:45:12.000Z",
                "data": [
                    {"videoUrl": "https://example.org/v1", "downloadUrl": "https://example.org/1.mp3"},
                    {"videoUrl": "https://example.org/v2"},
                ],
            }
        ),
        encoding="utf8",
    )

    records = load_input_document(str(path))
    assert [r.download_ref for r in records] == ["https://example.org/1.mp3"]
