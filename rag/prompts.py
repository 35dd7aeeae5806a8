"""Prompt templates for RAG answer generation."""

# ---------------------------------------------------------------------------
# Answer synthesis; context is the assembled chunk text joined by blank lines
# ---------------------------------------------------------------------------

RAG_ANSWER_PROMPT = """\
Answer concisely (limit ~250 words). Based on the following context, please answer \
the question. If the answer is not clearly available in the context, say so.

Context:
{context}

Question: {question}

Answer:"""

NO_CONTEXT_ANSWER = "No relevant context found"


def build_answer_prompt(question: str, context: str) -> str:
    return RAG_ANSWER_PROMPT.format(context=context, question=question)
