"""Prompt templates for grounded answering and answer validation."""

DEFAULT_SYSTEM_PROMPT = """
You are a helpful assistant answering questions about a document collection.
Use only the provided context documents. Cite the document you rely on,
for example "According to Document 2". If the context does not contain the
answer, say so explicitly.
""".strip()

VALIDATION_SYSTEM_PROMPT = """
You are a strict fact-checking assistant. You compare a response against source
documents and reply with a single JSON object and no extra prose.
""".strip()


def build_rag_prompt(system_prompt: str, context: str, question: str) -> str:
    return f"""
{system_prompt}

CONTEXT DOCUMENTS:
{context}

USER QUESTION: {question}

Remember: Only use information from the context documents above. If you cannot answer from the documents, say so explicitly.
""".strip()


def build_validation_prompt(question: str, response: str, source_text: str) -> str:
    return f"""
You are a fact-checking assistant. Your job is to validate whether a response to a question is ONLY based on the provided source documents.

QUESTION: {question}

RESPONSE TO VALIDATE: {response}

SOURCE DOCUMENTS:
{source_text}

Analyze the response and determine:
1. Does the response contain ANY information not present in the source documents?
2. Are there any claims that seem to come from general knowledge rather than the documents?
3. Are there any facts, numbers, dates, or details not explicitly mentioned in the sources?

Respond with a JSON object:
{{
  "isGrounded": true,
  "confidence": 0.0,
  "concerns": ["list of specific concerns"],
  "recommendation": "accept|flag|reject",
  "reasoning": "brief explanation"
}}

Be strict - if you find ANY information that's not in the source documents, mark as not grounded.
""".strip()
