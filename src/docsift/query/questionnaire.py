"""Match incoming questionnaire questions against previously approved answers."""

import logging
from dataclasses import dataclass

from ..embeddings.embedder import EmbeddingClient
from ..embeddings.vector import cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.90


@dataclass(frozen=True)
class ApprovedAnswer:
    question: str
    answer: str


@dataclass(frozen=True)
class AnswerMatch:
    approved: ApprovedAnswer
    similarity: float


def match_questions(
    questions: list[str],
    approved: list[ApprovedAnswer],
    client: EmbeddingClient,
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> list[AnswerMatch | None]:
    """Best approved answer per question, or None where a fresh draft is needed.

    A match needs cosine similarity of at least ``threshold`` between the two
    question texts. Ties keep the earlier approved answer.
    """
    if not questions:
        return []
    if not approved:
        return [None] * len(questions)

    approved_vecs = client.embed_batch([a.question for a in approved])
    question_vecs = client.embed_batch(questions)

    matches: list[AnswerMatch | None] = []
    for vec in question_vecs:
        best: AnswerMatch | None = None
        for candidate, candidate_vec in zip(approved, approved_vecs):
            similarity = cosine_similarity(vec, candidate_vec)
            if similarity >= threshold and (best is None or similarity > best.similarity):
                best = AnswerMatch(candidate, round(similarity, 4))
        matches.append(best)

    reused = sum(m is not None for m in matches)
    logger.info(f"Questionnaire: {reused}/{len(questions)} question(s) matched an approved answer")
    return matches
