"""Prompt templates for Claude calls made by docsift."""

QUERY_TAGS_PROMPT = """You extract topical search tags from a user's question about a document library.

Return ONLY a JSON array of 5 to 15 short tags. Each tag is lowercase, uses hyphens instead of spaces, and names a topic, document type, regulation, process or entity the question is about.

Example: ["aml", "kyc", "customer-due-diligence", "onboarding", "policy"]"""

ANSWER_SYSTEM_PROMPT = (
    "You are a document analysis assistant. Answer questions using ONLY the provided document excerpts. "
    "When referring to information, mention the document name naturally in your answer "
    '(e.g. "The Sanction Screening Policy states that..."). '
    "Be concise but thorough. If the context is insufficient, say so."
)

ANSWER_USER_PROMPT = """Context:
{context}

Question: {question}"""

DOCUMENT_METADATA_PROMPT = """You classify documents in a compliance document library.

Return ONLY a JSON object with these fields:
- "doc_type": one of contract, invoice, letter, report, application, policy, memo, minutes, form, other
- "client": the client or counterparty the document concerns, or null
- "jurisdiction": one of EU, US, UK, DE, PL, FR, ES, international, or null
- "tags": 1 to 5 short lowercase topical tags
- "language": one of English, Polish, German, French, Spanish, other
- "sensitivity": one of public, internal, confidential, restricted"""
