import pytest

from pipelines.chunker import Document, DocumentChunker, chunk_documents, count_pages


def numbered_text(count: int) -> str:
    return " ".join(f"Sentence number {i} describes feature {i * 7}." for i in range(count))


def assert_covers(text, pieces, overlap):
    """Every non-whitespace character of ``text`` lies in some piece."""
    spans = []
    cursor = 0
    for piece in pieces:
        start = text.find(piece, cursor)
        assert start >= 0, "chunk is not a slice of the text"
        spans.append((start, start + len(piece)))
        cursor = start + 1

    assert text[:spans[0][0]].strip() == ""
    assert text[spans[-1][1]:].strip() == ""
    for (_, prev_end), (next_start, _) in zip(spans, spans[1:]):
        if next_start > prev_end:
            assert text[prev_end:next_start].strip() == ""
        assert prev_end - next_start <= overlap


class TestDocumentChunker:

    def test_short_text_is_one_chunk(self):
        chunker = DocumentChunker()
        assert chunker.split_text("  Short text  ") == ["Short text"]

    def test_blank_text_has_no_chunks(self):
        chunker = DocumentChunker()
        assert chunker.split_text("") == []
        assert chunker.split_text(" \n\t ") == []

    def test_hard_cut_without_boundaries(self):
        chunker = DocumentChunker(chunk_size=2000, chunk_overlap=200)
        pieces = chunker.split_text("A" * 5000)

        assert [len(p) for p in pieces] == [2000, 2000, 1400]

    def test_windows_respect_size(self):
        chunker = DocumentChunker(chunk_size=500, chunk_overlap=50)
        text = numbered_text(200)
        pieces = chunker.split_text(text)

        assert len(pieces) > 1
        assert all(len(p) <= 500 for p in pieces)

    def test_windows_end_on_sentences(self):
        chunker = DocumentChunker(chunk_size=500, chunk_overlap=50)
        pieces = chunker.split_text(numbered_text(200))

        for piece in pieces[:-1]:
            assert piece.endswith(".")

    def test_boundary_in_first_half_is_ignored(self):
        chunker = DocumentChunker(chunk_size=100, chunk_overlap=10, min_chunk_size=1)
        text = "Intro." + "x" * 300
        pieces = chunker.split_text(text)

        assert len(pieces[0]) == 100

    def test_newline_is_a_boundary(self):
        chunker = DocumentChunker(chunk_size=100, chunk_overlap=10, min_chunk_size=1)
        text = "a" * 80 + "\n" + "b" * 200
        pieces = chunker.split_text(text)

        assert pieces[0] == "a" * 80

    def test_full_coverage(self):
        chunker = DocumentChunker(chunk_size=400, chunk_overlap=40)
        text = numbered_text(150)
        assert_covers(text, chunker.split_text(text), overlap=40)

    def test_tiny_pieces_are_dropped(self):
        chunker = DocumentChunker(chunk_size=100, chunk_overlap=10, min_chunk_size=50)
        text = "y" * 100 + "   zz"
        pieces = chunker.split_text(text)

        assert pieces == ["y" * 100]

    @pytest.mark.parametrize("size,overlap", [(100, 100), (100, 150), (100, -1), (0, 0)])
    def test_rejects_invalid_window(self, size, overlap):
        with pytest.raises(ValueError):
            DocumentChunker(chunk_size=size, chunk_overlap=overlap)

    def test_from_tokens(self):
        chunker = DocumentChunker.from_tokens(max_tokens=500, overlap_tokens=50)
        assert chunker.chunk_size == 2000
        assert chunker.chunk_overlap == 200


class TestChunkDocuments:

    def test_indexes_restart_per_document(self):
        docs = [
            Document(url="https://d.example.com/a", title="A", content=numbered_text(200)),
            Document(url="https://d.example.com/b", title="B", content="Just one short page."),
        ]
        chunks = chunk_documents(docs, chunk_size=500, chunk_overlap=50)

        a_chunks = [c for c in chunks if c.url.endswith("/a")]
        b_chunks = [c for c in chunks if c.url.endswith("/b")]
        assert [c.chunk_index for c in a_chunks] == list(range(len(a_chunks)))
        assert [(c.chunk_index, c.title, c.content) for c in b_chunks] == [(0, "B", "Just one short page.")]
        assert all(c.embedding is None for c in chunks)

    def test_large_page_yields_several_chunks(self):
        docs = [
            Document(url="https://d.example.com/1", title="One", content="Short page one. " * 10),
            Document(url="https://d.example.com/2", title="Two", content="Short page two. " * 10),
            Document(url="https://d.example.com/3", title="Three", content=("Long page text. " * 400)[:6000]),
        ]
        chunks = chunk_documents(docs)

        assert len([c for c in chunks if c.url.endswith("/3")]) >= 3
        assert count_pages(chunks) == 3

    def test_to_dict(self):
        chunk = chunk_documents([Document(url="u", title="t", content="hello")])[0]
        assert chunk.to_dict() == {"content": "hello", "url": "u", "title": "t", "chunk_index": 0}
