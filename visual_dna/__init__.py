"""
visual_dna — Photo fingerprinting and cascade matching for lost/found items.

Extracts a multi-layered "Visual DNA" from each photo (perceptual
hashes, HSV colours, shape and edge signatures, texture, OCR
identifiers, neural embedding) and matches new lost-item photos
against found-item photos (and vice versa) through a three-stage
cascade with human-readable match reasons.

Modules:
    composer           Parallel fingerprint extraction (extract_fingerprint)
    engine             CascadeMatcher and MatchingService.find_matches
    scoring            Deep DNA comparison, match types and reasons
    weights            Category weight tables and feature-adaptive weights
    weight_config      Versioned, cached weight/threshold configuration
    cache              TTL cache with stale-while-revalidate refresh
    hashing            aHash, dHash, pHash, blockHash and Hamming similarity
    histograms         HSV colour fingerprint and comparison
    shape_descriptors  Laplacian shape and Sobel edge fingerprints
    texture            Block-variance texture and grid pattern detection
    quality            Blur analysis and photo quality score
    identifiers        OCR validation, identifier extraction, multi-pass selection
    neural             Lazy ViT/CLIP embedding provider
    index_builder      FAISS binary hash indexes
    preprocessing      Image decoding, resizing and OCR variants
    geo                Distance and location boost
    storage            DNAStore protocol and in-memory store
    models             Record types
    exceptions         Error types
"""

__version__ = "2.0.0"
