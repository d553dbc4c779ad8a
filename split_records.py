# Description: Split a discovery document into chunks the uploader can process one at a time

# Args: [input_file] [chunk_size]


import json
import logging
import math
import os
import sys

import constants
from records import now_iso, write_json
from run_context import config_logger


logger = logging.getLogger(__name__)


def get_options(argv):
    input_file = argv[1] if len(argv) > 1 else constants.OUTPUT_FILE
    chunk_size = constants.CHUNK_SIZE
    if len(argv) > 2 and argv[2].isnumeric() and int(argv[2]) > 0:
        chunk_size = int(argv[2])
    logger.info(f"Args: {input_file=} {chunk_size=}")
    return input_file, chunk_size


def chunk_file_name(chunk_num):
    return f"scraped_mp3s_chunk_{str(chunk_num).zfill(2)}.json"


def build_chunks(doc_d, chunk_size):
    """
    Yield (file name, chunk document) pairs.
    Each chunk keeps a pointer back to the original scrape.
    """
    all_entries = doc_d["data"]
    total_chunks = math.ceil(len(all_entries) / chunk_size)
    split_at = now_iso()

    for chunk_i in range(total_chunks):
        start_index = chunk_i * chunk_size
        chunk_data = all_entries[start_index : start_index + chunk_size]
        yield chunk_file_name(chunk_i + 1), {
            "chunkNumber": chunk_i + 1,
            "totalChunks": total_chunks,
            "chunkSize": len(chunk_data),
            "originalScrapedCount": doc_d.get("scrapedCount", len(all_entries)),
            "originalStartUrl": doc_d.get("startUrl"),
            "originalScrapedAt": doc_d.get("scrapedAt"),
            "splitAt": split_at,
            "startIndex": start_index,
            "endIndex": start_index + len(chunk_data) - 1,
            "data": chunk_data,
        }


def split_document(input_file, out_dir=constants.CHUNKS_DIR, chunk_size=constants.CHUNK_SIZE):
    """
    Write every chunk plus chunks_index.json. Return the chunk file names.
    """
    with open(input_file, "r", encoding="utf8") as f:
        doc_d = json.load(f)

    logger.info(f"Found {len(doc_d['data'])} total MP3 entries")
    logger.info(f"Original scrape date: {doc_d.get('scrapedAt')}")

    if not os.path.exists(out_dir):
        os.makedirs(out_dir)
        logger.info(f"Created output directory: {out_dir}")

    chunk_index_l = []
    for file_name, chunk_d in build_chunks(doc_d, chunk_size):
        write_json(os.path.join(out_dir, file_name), chunk_d)
        chunk_index_l.append(
            {
                "fileName": file_name,
                "chunkNumber": chunk_d["chunkNumber"],
                "startIndex": chunk_d["startIndex"],
                "endIndex": chunk_d["endIndex"],
                "entryCount": chunk_d["chunkSize"],
            }
        )
        logger.info(
            f"Created {file_name}: {chunk_d['chunkSize']} entries "
            f"({chunk_d['startIndex'] + 1}-{chunk_d['endIndex'] + 1})"
        )

    write_json(
        os.path.join(out_dir, "chunks_index.json"),
        {
            "originalFile": os.path.basename(input_file),
            "totalEntries": len(doc_d["data"]),
            "chunkSize": chunk_size,
            "totalChunks": len(chunk_index_l),
            "splitAt": now_iso(),
            "originalScrapedAt": doc_d.get("scrapedAt"),
            "chunks": chunk_index_l,
        },
    )

    logger.info(f"  Splitting complete  ".center(70, "="))
    logger.info(f"Output directory: {out_dir}")
    logger.info(f"Total chunks created: {len(chunk_index_l)}")
    return [chunk["fileName"] for chunk in chunk_index_l]


def run():
    config_logger()
    input_file, chunk_size = get_options(sys.argv)
    try:
        chunk_files = split_document(input_file, chunk_size=chunk_size)
    except (OSError, ValueError, KeyError) as errex:
        logger.critical(f"Error splitting MP3 data: {errex!r}")
        sys.exit(1)

    if chunk_files:
        logger.info(f"Process a chunk with: mp3-uploader {os.path.join(constants.CHUNKS_DIR, chunk_files[0])}")


if __name__ == "__main__":
    run()
