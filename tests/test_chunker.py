"""
Tests for execution/evidence_rag/chunker.py

Covers: window arithmetic, index contiguity, short texts, parameter
validation, determinism, and lossless reconstruction.
"""

import random
import string

import pytest


class TestChunkConfig:
    def test_defaults(self):
        from execution.evidence_rag.chunker import ChunkConfig
        cfg = ChunkConfig()
        assert cfg.chunk_size == 1000
        assert cfg.overlap == 200

    def test_invalid_overlap_rejected(self):
        from execution.evidence_rag.chunker import ChunkConfig
        with pytest.raises(ValueError):
            ChunkConfig(chunk_size=100, overlap=100)

    def test_from_env(self, monkeypatch):
        from execution.evidence_rag.chunker import ChunkConfig
        monkeypatch.setenv("CHUNK_SIZE", "500")
        monkeypatch.setenv("CHUNK_OVERLAP", "50")
        cfg = ChunkConfig.from_env()
        assert (cfg.chunk_size, cfg.overlap) == (500, 50)


class TestChunkText:
    def test_empty_text_yields_no_chunks(self):
        from execution.evidence_rag.chunker import chunk_text
        assert chunk_text("", 100, 10) == []

    def test_short_text_yields_one_chunk(self):
        from execution.evidence_rag.chunker import chunk_text
        chunks = chunk_text("short evidence", 100, 20)
        assert len(chunks) == 1
        assert chunks[0].content == "short evidence"
        assert chunks[0].chunk_index == 0

    def test_exact_window_yields_one_chunk(self):
        from execution.evidence_rag.chunker import chunk_text
        assert len(chunk_text("x" * 100, 100, 20)) == 1

    def test_windows_advance_by_step(self):
        from execution.evidence_rag.chunker import chunk_text
        text = "".join(string.ascii_letters[i % 52] for i in range(250))
        chunks = chunk_text(text, chunk_size=100, overlap=20)
        # starts at 0, 80, 160; the third window reaches the end
        assert [c.content for c in chunks] == [text[0:100], text[80:180], text[160:250]]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]

    def test_final_chunk_never_empty(self):
        from execution.evidence_rag.chunker import chunk_text
        for length in range(1, 300):
            chunks = chunk_text("a" * length, chunk_size=50, overlap=10)
            assert all(c.content for c in chunks)

    def test_token_count_estimate(self):
        from execution.evidence_rag.chunker import chunk_text
        chunks = chunk_text("a" * 10, 100, 0)
        assert chunks[0].token_count == 3

    @pytest.mark.parametrize("size,overlap", [(0, 0), (-5, 0), (10, -1), (10, 10), (10, 15)])
    def test_invalid_params(self, size, overlap):
        from execution.evidence_rag.chunker import chunk_text
        with pytest.raises(ValueError):
            chunk_text("some text", size, overlap)

    def test_deterministic(self, sample_evidence_text):
        from execution.evidence_rag.chunker import chunk_text
        first = chunk_text(sample_evidence_text, 120, 30)
        second = chunk_text(sample_evidence_text, 120, 30)
        assert first == second


class TestReconstruction:
    """Dropping each non-final chunk's overlapping tail recovers the text."""

    def test_sample_document(self, sample_evidence_text):
        from execution.evidence_rag.chunker import EvidenceChunker, ChunkConfig
        chunker = EvidenceChunker(ChunkConfig(chunk_size=100, overlap=25))
        chunks = chunker.chunk(sample_evidence_text)
        assert len(chunks) > 1
        assert chunker.reconstruct(chunks) == sample_evidence_text

    def test_random_texts_and_params(self):
        from execution.evidence_rag.chunker import chunk_text, reconstruct_text
        rng = random.Random(1234)
        alphabet = string.ascii_letters + " \n.,"
        for _ in range(200):
            text = "".join(rng.choice(alphabet) for _ in range(rng.randint(1, 600)))
            size = rng.randint(1, 120)
            overlap = rng.randint(0, size - 1)
            chunks = chunk_text(text, size, overlap)
            assert reconstruct_text(chunks, size, overlap) == text

    def test_reconstruct_empty(self):
        from execution.evidence_rag.chunker import reconstruct_text
        assert reconstruct_text([]) == ""
