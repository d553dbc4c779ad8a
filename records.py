import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib import parse

import constants
from errors import AssetTooSmallError


logger = logging.getLogger(__name__)


def now_iso():
    """
    Current UTC time in ISO-8601, e.g. 2025-10-29T19:45:12.123456+00:00
    """
    return datetime.now(tz=timezone.utc).isoformat()


def normalize_ref(href, base=constants.BASE_URL):
    """
    Convert an href to an absolute ResourceRef.
    Relative paths are joined to the base. Whitespace and fragments are removed.
    """
    if href is None:
        return None
    href = href.strip()
    if not href:
        return None
    abspath = parse.urljoin(base, href)
    return parse.urldefrag(abspath)[0]


@dataclass(frozen=True)
class RecordMetadata:
    title: str = None
    author: str = None
    topics: tuple = ()
    podcast: str = None
    synopsis: str = None

    def to_dict(self):
        """
        Only fields that were found are written
        """
        meta_d = {}
        for name in ("title", "author", "podcast", "synopsis"):
            value = getattr(self, name)
            if value:
                meta_d[name] = value
        if self.topics:
            meta_d["topics"] = list(self.topics)
        return meta_d

    @classmethod
    def from_dict(cls, meta_d):
        meta_d = meta_d or {}
        return cls(
            title=meta_d.get("title") or None,
            author=meta_d.get("author") or None,
            topics=tuple(meta_d.get("topics") or ()),
            podcast=meta_d.get("podcast") or None,
            synopsis=meta_d.get("synopsis") or None,
        )


@dataclass(frozen=True)
class ContentRecord:
    """
    One discovered MP3. Created once by the extractor and never mutated.
    """

    source_page_ref: str
    download_ref: str
    metadata: RecordMetadata = field(default_factory=RecordMetadata)
    discovered_at: str = field(default_factory=now_iso)

    def title_or_default(self):
        return self.metadata.title or "Unknown Title"

    def to_dict(self):
        return {
            "videoUrl": self.source_page_ref,
            "downloadUrl": self.download_ref,
            "metadata": self.metadata.to_dict(),
            "scrapedAt": self.discovered_at,
        }

    @classmethod
    def from_dict(cls, rec_d):
        return cls(
            source_page_ref=rec_d["videoUrl"],
            download_ref=rec_d["downloadUrl"],
            metadata=RecordMetadata.from_dict(rec_d.get("metadata")),
            discovered_at=rec_d.get("scrapedAt") or now_iso(),
        )


class RetrievedAsset:
    """
    A record plus its downloaded bytes.
    The byte buffer is released once the object store has it.
    """

    def __init__(self, record, local_bytes, min_file_bytes=constants.MIN_FILE_BYTES):
        if len(local_bytes) <= min_file_bytes:
            raise AssetTooSmallError(len(local_bytes), min_file_bytes)
        self.record = record
        self.local_bytes = local_bytes
        self.byte_length = len(local_bytes)

    def release(self):
        self.local_bytes = b""


@dataclass(frozen=True)
class StoragePlacement:
    key: str
    record: ContentRecord
    rag_document: dict


def load_input_document(path):
    """
    Read a discovery document or chunk file and return its ContentRecords.
    Chunk fields are informational only.
    """
    with open(path, "r", encoding="utf8") as f:
        doc_d = json.load(f)

    logger.info(f"Found {len(doc_d['data'])} MP3s to upload")
    logger.info(f"Originally scraped at: {doc_d.get('originalScrapedAt') or doc_d.get('scrapedAt')}")
    if doc_d.get("chunkNumber"):
        logger.info(f"Processing chunk {doc_d['chunkNumber']} of {doc_d.get('totalChunks')}")
        if "startIndex" in doc_d and "endIndex" in doc_d:
            logger.info(f"Entries {doc_d['startIndex'] + 1} to {doc_d['endIndex'] + 1} from original dataset")

    records = []
    for rec_d in doc_d["data"]:
        try:
            records.append(ContentRecord.from_dict(rec_d))
        except KeyError:
            logger.warning(f"Skipping malformed entry: {rec_d}")
    return records


def write_json(path, doc_d):
    with open(path, "w", encoding="utf8") as f:
        json.dump(doc_d, f, indent=2, ensure_ascii=False)
