"""
FAISS binary indexes over perceptual hashes.

Stage 1 of the cascade needs the Hamming distance between the query
and every candidate for up to three hash algorithms (pHash, aHash,
dHash). Each algorithm gets its own IndexBinaryFlat wrapped in an
IndexBinaryIDMap, so records that lack a given hash are simply absent
from that index and the ids returned map back to corpus positions.

Indexes can be built in memory per search, or built once over a
corpus snapshot and persisted next to an ordered photo-id list:
    - hash_<algorithm>.index: one binary FAISS index per algorithm
    - hash_photo_ids.npy: maps index ids to photo ids
"""

import os
import logging
from typing import Dict, List, Optional, Sequence

import faiss
import numpy as np

from .hashing import HASH_BITS
from .models import VisualDNA

logger = logging.getLogger(__name__)

# Hash algorithms used for the broad filter, in PerceptualHashes attribute names
INDEXED_HASHES = ("p_hash", "a_hash", "d_hash")
HASH_BYTES = HASH_BITS // 8
PHOTO_IDS_FILE = "hash_photo_ids.npy"


def hash_to_bytes(hex_hash: Optional[str]) -> Optional[np.ndarray]:
    """Packed uint8 code for a 64-bit hex hash, None if missing or malformed."""
    if not hex_hash or len(hex_hash) != HASH_BYTES * 2:
        return None
    try:
        return np.frombuffer(bytes.fromhex(hex_hash), dtype=np.uint8)
    except ValueError:
        return None


def _index_path(directory: str, algorithm: str) -> str:
    return os.path.join(directory, f"hash_{algorithm}.index")


class HashIndex:
    """
    Per-algorithm binary indexes over a fixed list of fingerprints.

    Index ids are positions in the list passed to build(); photo_ids
    keeps the position -> photo id mapping.
    """

    def __init__(self, indexes: Dict[str, faiss.IndexBinary], photo_ids: List[Optional[str]]):
        self.indexes = indexes
        self.photo_ids = photo_ids

    @classmethod
    def build(cls, records: Sequence[VisualDNA]) -> "HashIndex":
        indexes = {}
        for algorithm in INDEXED_HASHES:
            codes = []
            ids = []
            for position, dna in enumerate(records):
                code = hash_to_bytes(getattr(dna.hashes, algorithm))
                if code is not None:
                    codes.append(code)
                    ids.append(position)

            index = faiss.IndexBinaryIDMap(faiss.IndexBinaryFlat(HASH_BITS))
            if codes:
                index.add_with_ids(np.vstack(codes), np.asarray(ids, dtype=np.int64))
            indexes[algorithm] = index

        return cls(indexes, [dna.photo_id for dna in records])

    def __len__(self) -> int:
        return len(self.photo_ids)

    def distances(self, query: VisualDNA) -> Dict[int, float]:
        """
        Average Hamming distance from the query to each indexed record.

        Only hash pairs present on both sides contribute.

        Returns:
            Mapping of record position to mean distance (0-64). Records
            sharing no hash algorithm with the query are omitted.
        """
        totals: Dict[int, float] = {}
        counts: Dict[int, int] = {}

        for algorithm, index in self.indexes.items():
            code = hash_to_bytes(getattr(query.hashes, algorithm))
            if code is None or index.ntotal == 0:
                continue
            dist, ids = index.search(code.reshape(1, -1), index.ntotal)
            for d, position in zip(dist[0], ids[0]):
                if position < 0:
                    continue
                position = int(position)
                totals[position] = totals.get(position, 0.0) + float(d)
                counts[position] = counts.get(position, 0) + 1

        return {pos: totals[pos] / counts[pos] for pos in totals}

    def save(self, output_dir: str) -> None:
        os.makedirs(output_dir, exist_ok=True)
        for algorithm, index in self.indexes.items():
            faiss.write_index_binary(index, _index_path(output_dir, algorithm))
        np.save(os.path.join(output_dir, PHOTO_IDS_FILE),
                np.array([pid or "" for pid in self.photo_ids]))

    @classmethod
    def load(cls, index_dir: str) -> "HashIndex":
        """
        Load indexes written by save() or build_hash_index().

        Raises:
            FileNotFoundError: If the photo id mapping is missing.
        """
        ids_path = os.path.join(index_dir, PHOTO_IDS_FILE)
        if not os.path.exists(ids_path):
            raise FileNotFoundError(f"No hash index in {index_dir}")
        photo_ids = [str(pid) or None for pid in np.load(ids_path, allow_pickle=False)]

        indexes = {}
        for algorithm in INDEXED_HASHES:
            path = _index_path(index_dir, algorithm)
            if os.path.exists(path):
                indexes[algorithm] = faiss.read_index_binary(path)
            else:
                logger.warning(f"No {algorithm} index in {index_dir}")
        logger.info(f"Loaded hash index: {len(photo_ids)} records, {len(indexes)} algorithms")
        return cls(indexes, photo_ids)


def build_hash_index(records: Sequence[VisualDNA], output_dir: str) -> dict:
    """
    Build and persist hash indexes for a corpus snapshot.

    Args:
        records: Fingerprints to index; unmatchable records are skipped.
        output_dir: Directory to write index files.

    Returns:
        Dict with 'success', 'records', and per-algorithm 'vectors' counts.
    """
    matchable = [dna for dna in records if dna.is_matchable]
    if not matchable:
        return {"success": False, "error": "No matchable fingerprints"}

    index = HashIndex.build(matchable)
    index.save(output_dir)

    vectors = {algorithm: int(idx.ntotal) for algorithm, idx in index.indexes.items()}
    logger.info(
        f"Hash index built: {len(matchable)} records "
        f"({len(records) - len(matchable)} skipped), vectors {vectors}"
    )

    return {
        "success": True,
        "records": len(matchable),
        "skipped": len(records) - len(matchable),
        "vectors": vectors,
        "index_dir": output_dir,
    }
