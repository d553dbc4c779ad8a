"""
Storage key and metadata derivation.

Everything here is a pure function of a ContentRecord and its 1-based
sequence index, so a replay of the same input order yields the same keys.
"""

import posixpath

import constants
from records import now_iso


def classify_content_type(source_page_ref):
    for marker, content_type in constants.CONTENT_TYPE_RULES:
        if marker in source_page_ref:
            return content_type
    return constants.DEFAULT_CONTENT_TYPE


def extract_content_id(source_page_ref):
    aid_match = constants.AID_REG.search(source_page_ref)
    return aid_match.group(1) if aid_match else constants.UNKNOWN_ID


def sanitize_title(title, max_len):
    """
    Keep letters, digits, whitespace and hyphens, turn whitespace runs into
    hyphens, lowercase and truncate.
    """
    clean = constants.TITLE_STRIP_REG.sub("", title or "")
    clean = constants.TITLE_SPACE_REG.sub("-", clean).lower()[:max_len]
    return clean or constants.UNTITLED


def pad_index(index):
    return str(index).zfill(4)


def derive_storage_key(record, index):
    """
    {contentType}/{title segment}/{content id}/{0001}-{title filename}.mp3
    """
    title = record.metadata.title
    content_type = classify_content_type(record.source_page_ref)
    content_id = extract_content_id(record.source_page_ref)
    segment = sanitize_title(title, constants.TITLE_SEGMENT_LEN)
    filename = sanitize_title(title, constants.TITLE_FILENAME_LEN)
    return f"{content_type}/{segment}/{content_id}/{pad_index(index)}-{filename}.mp3"


def sanitize_header_value(value):
    """
    Object store headers only accept printable ASCII and have a size limit
    """
    if not value:
        return ""
    clean = constants.HEADER_STRIP_REG.sub("", str(value))
    return clean.strip()[: constants.HEADER_VALUE_LEN]


def build_object_headers(record, uploaded_at=None):
    meta = record.metadata
    return {
        "original-title": sanitize_header_value(meta.title),
        "author": sanitize_header_value(meta.author),
        "topics": sanitize_header_value(",".join(meta.topics)),
        "podcast": sanitize_header_value(meta.podcast),
        "source-url": sanitize_header_value(record.source_page_ref),
        "uploaded-at": uploaded_at or now_iso(),
    }


def build_rag_document(record, index, bucket, key, url, uploaded_at=None):
    """
    Search and AI oriented description of one uploaded MP3
    """
    meta = record.metadata
    topics = list(meta.topics)
    author = meta.author or ""
    topic_text = ", ".join(topics) if topics else constants.DEFAULT_TOPIC_TEXT
    searchable = " ".join(part for part in [meta.title or "", author] + topics if part)

    return {
        "id": f"{constants.RAG_ID_PREFIX}-{pad_index(index)}",
        "content": {
            "title": meta.title,
            "author": meta.author,
            "topics": topics,
            "podcast": meta.podcast or "",
            "description": f"Audio class by {author or 'Unknown'} on {topic_text}",
        },
        "file": {
            "s3Bucket": bucket,
            "s3Key": key,
            "s3Url": url,
            "fileType": constants.RAG_FILE_TYPE,
            "fileName": posixpath.basename(key),
        },
        "source": {
            "originalUrl": record.source_page_ref,
            "downloadUrl": record.download_ref,
            "scrapedAt": record.discovered_at,
            "uploadedAt": uploaded_at or now_iso(),
        },
        "search": dict(constants.RAG_SEARCH_FIELDS, searchableText=searchable.lower()),
    }
