"""
Block-driven question generation.

The instructor's question blocks fix type, count, marks and duration; the
model only supplies wording, options and correct answers. Whatever the model
claims about marks or time is overwritten from the block.
"""
import json
import logging
import re
from typing import Any, Dict, List, Sequence

from assessgrade.core.errors import ProviderError, QuestionGenerationError
from assessgrade.services.ai_providers import ProviderPool
from assessgrade.services.equivalence import map_language

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_ARRAY = re.compile(r"\[[\s\S]*\]")


def _block_line(block) -> str:
    extra = ""
    if block.question_type == "multiple_choice" and block.num_options:
        extra = f" with {block.num_options} options each"
    elif block.question_type == "matching" and block.num_first_side:
        extra = f" with {block.num_first_side} left items and {block.num_second_side or block.num_first_side} right items"
    return (f"- {block.question_count} {block.question_type}{extra}; positive_marks {block.positive_marks:g}, "
            f"negative_marks {block.negative_marks:g}, duration_per_question {block.duration_per_question}")


def build_prompt(assessment, blocks: Sequence, language_name: str) -> str:
    types = ", ".join(dict.fromkeys(b.question_type for b in blocks))
    lines = "\n".join(_block_line(b) for b in blocks)
    return f"""Generate ONLY a valid JSON array of questions in {language_name}. NO text outside.

STRICT RULES:
1. Question types EXACTLY: {types}
2. Exact counts:
{lines}
3. EVERY question MUST have question_type, question_text, options (array or null) and correct_answer.
4. multiple_choice: correct_answer is the exact text of one option.
5. true_false: correct_answer is true or false.
6. matching: options is {{"left": [...], "right": [...]}} and correct_answer is a list of [left, right] pairs.
7. short_answer: correct_answer is an object
   {{"grading_type": "keyword_match", "required_keywords": [strings], "optional_keywords": [strings], "min_required_match": number}}
8. essay: correct_answer is a rubric {{"criteria": [{{"name": string, "max_marks": number, "keywords": [strings]}}]}}
   whose max_marks add up to the question's positive_marks.

Title: "{assessment.title}"
Prompt: "{assessment.prompt or 'N/A'}"
"""


def extract_json_array(text: str) -> List[Any]:
    cleaned = _FENCE.sub("", (text or "").strip()).strip()
    m = _ARRAY.search(cleaned)
    if not m:
        raise QuestionGenerationError("No JSON array found in generated output")
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError as exc:
        raise QuestionGenerationError(f"Invalid JSON from AI: {exc.msg}") from exc
    if not isinstance(data, list):
        raise QuestionGenerationError("Generated output is not a JSON array")
    return data


def shape_questions(raw: Sequence[Any], blocks: Sequence) -> List[Dict[str, Any]]:
    """Pin every question to a block and drop what doesn't fit.

    Blocks of the same type fill in order, each up to its own count and with
    its own marks and duration.
    """
    by_type: Dict[str, List[int]] = {}
    for i, b in enumerate(blocks):
        by_type.setdefault(b.question_type, []).append(i)
    filled = [0] * len(blocks)
    questions = []
    for i, q in enumerate(raw, start=1):
        if not isinstance(q, dict):
            logger.warning("Generated question %d is not an object, skipping", i)
            continue
        text = q.get("question_text")
        if not isinstance(text, str) or not text.strip():
            logger.warning("Generated question %d has no text, skipping", i)
            continue
        candidates = by_type.get(q.get("question_type")) or by_type[blocks[0].question_type]
        slot = next((n for n in candidates if filled[n] < blocks[n].question_count), None)
        if slot is None:
            continue
        filled[slot] += 1
        block = blocks[slot]
        questions.append({
            "question_order": len(questions) + 1,
            "question_type": block.question_type,
            "question_text": text.strip(),
            "options": q.get("options"),
            "correct_answer": q.get("correct_answer"),
            "positive_marks": float(block.positive_marks),
            "negative_marks": float(block.negative_marks),
            "duration_per_question": int(block.duration_per_question),
        })
    return questions


def generate_questions(pool: ProviderPool, assessment, blocks: Sequence, language: str = "en",
                       *, max_output_tokens: int = 3000, temperature: float = 0.4) -> List[Dict[str, Any]]:
    if not blocks:
        raise QuestionGenerationError(f"No question blocks defined for assessment {assessment.id}")
    prompt = build_prompt(assessment, blocks, map_language(language))
    try:
        text = pool.complete(prompt, max_output_tokens=max_output_tokens, temperature=temperature)
    except ProviderError as exc:
        raise QuestionGenerationError(f"Question generation failed: {exc.message}") from exc
    questions = shape_questions(extract_json_array(text), blocks)
    if not questions:
        raise QuestionGenerationError("Generated output contained no usable questions")
    logger.info("Generated %d questions for assessment %s", len(questions), assessment.id)
    return questions
