"""Document ingestion and retrieval-backed question generation.

Uploaded PDFs are reduced to plain text, split into paragraph-bounded
chunks, embedded one chunk at a time and stored next to their vectors.
Question generation embeds a query, keeps the chunks whose cosine
similarity clears a threshold and hands the best ones to the AI as context.
"""

from __future__ import annotations

import hashlib
import io
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from ai_client import EMBEDDING_DIMENSIONS
from errors import UpstreamServiceError, ValidationFailed

logger = logging.getLogger(__name__)

MAX_PDF_BYTES = 15 * 1024 * 1024
DOCUMENT_TYPES = ("book", "past_question")
MIN_GRADE, MAX_GRADE = 9, 12

MIN_PARAGRAPH_CHARS = 50
MAX_PARAGRAPH_CHARS = 1000
MIN_SENTENCE_CHARS = 20
MAX_CHUNK_CHARS = 800
MAX_CHUNKS_PER_DOCUMENT = 200

SIMILARITY_THRESHOLD = 0.7
TOP_K = 5

QUESTION_SYSTEM_PROMPT = (
    "You are an expert educator creating high-quality multiple choice examination questions. "
    "Always follow the exact format specified."
)

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_WORD_RE = re.compile(r"\W+")
_OPTION_RE = re.compile(r"([A-D])\)\s*(.*?)\s*(?=,?\s*[A-D]\)|$)")


class EmbeddingBackend(Protocol):
    """Anything that maps text to a vector."""

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError("EmbeddingBackend implementations must define embed().")


class HashEmbeddingBackend:
    """Offline embedder: bag of words folded into fixed buckets by sha256."""

    def __init__(self, dimensions: int = EMBEDDING_DIMENSIONS) -> None:
        self.dimensions = max(8, dimensions)

    def embed(self, text: str) -> List[float]:
        counts = Counter(word for word in _WORD_RE.split(text.lower()) if word)
        vector = [0.0] * self.dimensions
        for word, count in counts.items():
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:8], "big") % self.dimensions] += count
        length = math.sqrt(sum(value * value for value in vector))
        return [value / length for value in vector] if length else vector


def default_embedding_backend(settings, ai_client) -> EmbeddingBackend:
    """Gemini embeddings when a key is configured, hashed words otherwise."""
    if settings.gemini_api_key:
        return ai_client
    logger.info("GEMINI_API_KEY not set, using hash embeddings for documents")
    return HashEmbeddingBackend()


@dataclass
class RetrievedChunk:
    id: str
    content: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedQuestion:
    question: str
    options: List[str]
    correct_answer: str
    explanation: str


def _cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if not vec_a or not vec_b:
        return 0.0
    # Ensure equal length by truncation.
    length = min(len(vec_a), len(vec_b))
    a = vec_a[:length]
    b = vec_b[:length]
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def extract_pdf_text(data: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PyPdfError, ValueError, OSError) as exc:
        logger.warning("PDF parsing failed: %s", exc)
        raise ValidationFailed("Failed to parse PDF file", {"file": "not a readable PDF"}) from None
    return "\n\n".join(pages)


def _pack_sentences(paragraph: str) -> List[str]:
    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(paragraph) if len(s.strip()) > MIN_SENTENCE_CHARS]
    chunks: List[str] = []
    current = ""
    for sentence in sentences:
        if len(current) + len(sentence) > MAX_CHUNK_CHARS:
            if current:
                chunks.append(current)
            current = sentence
        else:
            current = f"{current} {sentence}" if current else sentence
    if current:
        chunks.append(current)
    return chunks


def merge_overflow(chunks: Sequence[str], max_chunks: int = MAX_CHUNKS_PER_DOCUMENT) -> List[str]:
    """Merge adjacent chunks into at most ``max_chunks`` groups, preserving order."""
    if len(chunks) <= max_chunks:
        return list(chunks)
    group_size = math.ceil(len(chunks) / max_chunks)
    return ["\n\n".join(chunks[i : i + group_size]) for i in range(0, len(chunks), group_size)]


def chunk_text(text: str, max_chunks: int = MAX_CHUNKS_PER_DOCUMENT) -> List[str]:
    """Paragraph-bounded chunks.

    Paragraphs are separated by blank lines; short ones are noise (headers,
    page numbers) and dropped. Long paragraphs are packed sentence by
    sentence up to ``MAX_CHUNK_CHARS``.
    """
    chunks: List[str] = []
    for paragraph in re.split(r"\n\s*\n", text or ""):
        paragraph = paragraph.strip()
        if len(paragraph) <= MIN_PARAGRAPH_CHARS:
            continue
        if len(paragraph) <= MAX_PARAGRAPH_CHARS:
            chunks.append(paragraph)
        else:
            chunks.extend(_pack_sentences(paragraph))
    return merge_overflow(chunks, max_chunks)


def parse_generated_question(text: str) -> Optional[ParsedQuestion]:
    """Parse ``Question:/Options:/Correct Answer:/Explanation:`` lines; None unless complete."""
    question = correct = explanation = ""
    options: List[str] = []
    for line in (text or "").splitlines():
        line = line.strip().lstrip("-* ").strip()
        if line.startswith("Question:"):
            question = line[len("Question:"):].strip()
        elif line.startswith("Options:"):
            options_text = line[len("Options:"):].strip()
            options = [f"{letter}) {value}" for letter, value in _OPTION_RE.findall(options_text)]
        elif line.startswith("Correct Answer:"):
            correct = line[len("Correct Answer:"):].strip().rstrip(")").strip()
        elif line.startswith("Explanation:"):
            explanation = line[len("Explanation:"):].strip()
    if not question or len(options) != 4 or not correct or not explanation:
        return None
    return ParsedQuestion(question=question, options=options, correct_answer=correct[:1].upper(), explanation=explanation)


def _document_view(document: Mapping[str, Any]) -> Dict[str, Any]:
    view = {
        "id": document["id"],
        "title": document["title"],
        "type": document["type"],
        "grade": document.get("grade"),
        "subject": document.get("subject"),
        "filename": document.get("filename"),
        "createdAt": document["created_at"],
    }
    if "chunk_count" in document:
        view["chunkCount"] = int(document["chunk_count"] or 0)
    return view


def _question_view(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "question": row["question"],
        "options": row.get("options") or [],
        "correctAnswer": row["correct_answer"],
        "explanation": row.get("explanation") or "",
        "grade": row.get("grade"),
        "subject": row.get("subject"),
        "topic": row.get("topic"),
        "createdAt": row["created_at"],
    }


class DocumentService:
    def __init__(self, database, ai_client, embedder: Optional[EmbeddingBackend] = None, gamification=None):
        self.db = database
        self.ai = ai_client
        self.embedder = embedder or ai_client
        self.gamification = gamification

    def _embed_or_zero(self, text: str, position: int, total: int) -> List[float]:
        try:
            return self.embedder.embed(text)
        except UpstreamServiceError as exc:
            logger.warning("Embedding %s/%s failed, storing zero vector: %s", position, total, exc.message)
            return [0.0] * EMBEDDING_DIMENSIONS

    def upload_document(
        self,
        data: bytes,
        filename: Optional[str],
        title: str,
        doc_type: str,
        grade: Optional[int] = None,
        subject: Optional[str] = None,
        content_type: Optional[str] = None,
        uploaded_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        fields: Dict[str, str] = {}
        if not data:
            fields["file"] = "No file provided"
        elif len(data) > MAX_PDF_BYTES:
            fields["file"] = "File exceeds the 15MB limit"
        is_pdf = (content_type == "application/pdf") or (filename or "").lower().endswith(".pdf")
        if data and not is_pdf:
            fields["file"] = "Only PDF files are allowed"
        if not str(title or "").strip():
            fields["title"] = "title is required"
        if doc_type not in DOCUMENT_TYPES:
            fields["type"] = "type must be one of " + ", ".join(DOCUMENT_TYPES)
        if grade is not None and not MIN_GRADE <= int(grade) <= MAX_GRADE:
            fields["grade"] = f"grade must be between {MIN_GRADE} and {MAX_GRADE}"
        if fields:
            raise ValidationFailed("Invalid document upload", fields)

        text = extract_pdf_text(data)
        chunks = chunk_text(text)
        logger.info("Document %r parsed: %s chars, %s chunks", title, len(text), len(chunks))
        stored = [
            {"content": chunk, "embedding": self._embed_or_zero(chunk, index + 1, len(chunks))}
            for index, chunk in enumerate(chunks)
        ]
        document = self.db.create_document(
            {
                "title": str(title).strip(),
                "type": doc_type,
                "grade": grade,
                "subject": subject,
                "filename": filename,
                "uploaded_by": uploaded_by,
            },
            stored,
        )
        return {**_document_view(document), "chunkCount": len(stored)}

    def search_chunks(
        self,
        query_vector: Sequence[float],
        grade: Optional[int] = None,
        subject: Optional[str] = None,
        threshold: float = SIMILARITY_THRESHOLD,
        k: int = TOP_K,
    ) -> List[RetrievedChunk]:
        scored = []
        for row in self.db.list_chunks(grade=grade, subject=subject):
            score = _cosine_similarity(query_vector, row.get("embedding") or [])
            if score > threshold:
                scored.append(
                    RetrievedChunk(
                        id=row["id"],
                        content=row["content"],
                        score=score,
                        metadata={"documentId": row["document_id"], "documentTitle": row["document_title"]},
                    )
                )
        scored.sort(key=lambda chunk: chunk.score, reverse=True)
        return scored[:k]

    def generate_question(
        self,
        user_id: str,
        grade: Optional[int] = None,
        subject: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        if grade is not None and not MIN_GRADE <= int(grade) <= MAX_GRADE:
            raise ValidationFailed("Invalid question request", {"grade": f"grade must be between {MIN_GRADE} and {MAX_GRADE}"})
        query = (
            f"Generate a matric-style question for grade {grade or ''} {subject or ''} "
            f"about {topic or 'general knowledge'}"
        )
        retrieved = self.search_chunks(self.embedder.embed(" ".join(query.split())), grade=grade, subject=subject)
        if not retrieved:
            raise ValidationFailed("No relevant content found for the requested topic")

        context = "\n\n".join(chunk.content for chunk in retrieved)
        prompt = (
            f"Based on the following curriculum content for grade {grade or 'any'} {subject or ''}:\n\n"
            f"{context}\n\n"
            "Generate a multiple choice question suitable for a matric examination. The question should be "
            "challenging and test deep understanding. Provide:\n"
            "- Question: [the question text]\n"
            "- Options: A) [option1], B) [option2], C) [option3], D) [option4]\n"
            "- Correct Answer: [the letter of the correct answer]\n"
            "- Explanation: [brief explanation of why the answer is correct]\n\n"
            "Format your response exactly like this example:\n"
            "Question: What is the capital of France?\n"
            "Options: A) London, B) Paris, C) Berlin, D) Rome\n"
            "Correct Answer: B\n"
            "Explanation: Paris is the capital and most populous city of France."
        )
        result = self.ai.generate(prompt, QUESTION_SYSTEM_PROMPT)
        parsed = parse_generated_question(result.response)
        if parsed is None:
            logger.warning("Unparseable question from %s: %.200s", result.provider, result.response)
            raise UpstreamServiceError("Failed to generate a valid multiple choice question")

        row = self.db.insert_generated_question(
            user_id,
            {
                "question": parsed.question,
                "options": parsed.options,
                "correct_answer": parsed.correct_answer,
                "explanation": parsed.explanation,
                "grade": grade,
                "subject": subject,
                "topic": topic,
                "source_chunk_ids": [chunk.id for chunk in retrieved],
            },
        )
        if self.gamification is not None:
            self.gamification.record_activity(user_id)
        return _question_view(row)

    def list_user_questions(self, user_id: str) -> List[Dict[str, Any]]:
        return [_question_view(row) for row in self.db.list_generated_questions(user_id)]

    def list_documents(self) -> List[Dict[str, Any]]:
        return [_document_view(row) for row in self.db.list_documents()]
