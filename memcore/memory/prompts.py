"""
MemCore — Prompt Templates
============================
Prompts for the LLM-backed capabilities.  All outputs are line-oriented
plain text rather than JSON, which small models break less often.

Rendered with ``str.format``; literal braces are doubled.
"""

from __future__ import annotations

EXTRACTION_SYSTEM = (
    "You turn conversations and documents into durable memory records. "
    "Record only what is stated or clearly implied. Never invent facts. "
    "Reply with the requested sections only, no commentary."
)

EXTRACTION_PROMPT = """Today is {today}.

Input ({scene}):
<<<
{text}
>>>

Output format rules:
- A section starts with its header alone on a line, exactly as shown.
- Inside a section write KEY: value lines. Repeat a key for multiple values.
- Omit a section entirely when the input has nothing for it.

{sections}
"""

EPISODE_SECTION = """## EPISODE
CONTENT: a third-person narrative of what happened, with concrete details
SUMMARY: one sentence
KEYWORDS: comma, separated, keywords"""

EVENT_LOG_SECTION = """## EVENT_LOG
TIME: YYYY-MM-DD of the events, if known
FACT: one atomic fact per line (at most {max_facts})"""

FORESIGHT_SECTION = """## FORESIGHT
CONTENT: a plan, commitment or likely future event
START: YYYY-MM-DD when it becomes relevant
END: YYYY-MM-DD when it stops being relevant
EVIDENCE: the sentence in the input that supports it
---
(separate items with a line containing only ---, at most {max_items} items)"""

PROFILE_SECTION = """## PROFILE
ITEM: one lasting fact about the user (name they prefer, skills, interests, habits)
(only when the input states something about the user personally)"""


QUERY_EXPANSION_PROMPT = """Rewrite the search query below into {count} shorter sub-queries
that together cover its intents. Write one sub-query per line with no numbering.

Query: {query}
"""

RERANK_PROMPT = """Rate how relevant each numbered document is to the query on a scale
from 0 to 10. Reply with exactly {count} lines, one number per line, in document order.

Query: {query}

{documents}
"""

DEDUP_CONFIRM_PROMPT = """Do these two memory records state the same thing?
Differences in wording do not matter; a different time, amount, person or outcome does.

Existing: {existing}
New: {new}

Reply with one line starting with SAME or DIFF, followed by a short reason.
"""

SUFFICIENCY_PROMPT = """Decide whether the retrieved memories below are enough to answer the query.

Query: {query}

{documents}

Reply with SUFFICIENT or INSUFFICIENT alone on the first line, then a short reason.
When insufficient, add one line per missing piece of information starting with MISSING:
"""

REFINE_QUERY_PROMPT = """The memories retrieved for the query below leave gaps.
Write {count} new search queries that would find the missing information.
Write one query per line with no numbering.

Query: {query}
Missing:
{missing}

Already retrieved:
{documents}
"""
