"""Document loading and unit building (whole documents or chunks)."""

from __future__ import annotations

import re
from pathlib import Path

import fitz

from hybrid_rag.chunker import ChunkOptions, chunk_document, should_chunk
from hybrid_rag.config import dataset_dir
from hybrid_rag.models import Chunk, Document

ALLOWED_EXTENSIONS = {".pdf", ".txt", ".md", ".rst"}

_FRONT_MATTER = re.compile(r"^---\s*[\r\n]+[\s\S]*?[\r\n]+---\s*[\r\n]*")
_SEPARATOR = re.compile(r"^\*{3}$", re.MULTILINE)


def strip_front_matter(text: str) -> str:
    return _FRONT_MATTER.sub("", text, count=1).strip()


def split_blocks(text: str) -> list[str]:
    blocks = (block.strip() for block in _SEPARATOR.split(strip_front_matter(text)))
    return [block for block in blocks if block]


def load_dataset(dataset: str) -> list[Document]:
    path = dataset_dir(dataset) / "docs.md"
    if not path.is_file():
        raise FileNotFoundError(f"Dataset not found: {dataset} (expected {path})")
    blocks = split_blocks(path.read_text(encoding="utf-8"))
    return [Document(id=str(idx), text=text) for idx, text in enumerate(blocks, start=1)]


def load_system_prompt(dataset: str) -> str:
    path = dataset_dir(dataset) / "system-prompt.md"
    if not path.is_file():
        return ""
    return strip_front_matter(path.read_text(encoding="utf-8"))


def validate_extension(filename: str) -> str:
    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        allowed = ", ".join(sorted(ALLOWED_EXTENSIONS))
        raise ValueError(f"Unsupported file extension '{ext}'. Allowed: {allowed}.")
    return ext


def _read_pdf(path: Path) -> str:
    with fitz.open(path) as pdf:
        return "\n".join(page.get_text("text") for page in pdf)


def load_documents(paths: list[str]) -> list[Document]:
    docs: list[Document] = []
    for idx, raw_path in enumerate(paths, start=1):
        path = Path(raw_path).expanduser().resolve()
        if not path.exists() or not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")

        if validate_extension(path.name) == ".pdf":
            text = _read_pdf(path)
        else:
            text = path.read_text(encoding="utf-8", errors="ignore")
        docs.append(Document(id=f"DOC-{idx:02d}", text=text.strip()))
    return docs


def build_units(
    documents: list[Document],
    options: ChunkOptions | None = None,
) -> list[Document | Chunk]:
    """Chunk documents that are well above the chunk budget; keep the rest whole."""
    opts = options or ChunkOptions()
    units: list[Document | Chunk] = []
    for doc in documents:
        if should_chunk(doc.text, opts.max_tokens):
            units.extend(chunk_document(doc.id, doc.text, opts))
        else:
            units.append(doc)
    return units
