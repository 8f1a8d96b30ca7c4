from .ingest import chunk_text, load_file
from .prompt import SYSTEM_INSTRUCTIONS, Prompt, PromptAssembler
from .retriever import DEFAULT_BATCH_SIZE, Retriever, VectorIndex

# FaissIndex lives in .index and is imported on demand (pulls in faiss).
__all__ = [
    "DEFAULT_BATCH_SIZE",
    "SYSTEM_INSTRUCTIONS",
    "Prompt",
    "PromptAssembler",
    "Retriever",
    "VectorIndex",
    "chunk_text",
    "load_file",
]
