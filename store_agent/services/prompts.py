"""
Prompt templates and query preprocessing for the store assistant.
"""

import re
from typing import Dict, List

ARABIC_PATTERN = re.compile(r'[؀-ۿ]')

ABBREVIATIONS: Dict[str, str] = {
    'inv': 'inventory',
    'acc': 'accounting',
    'cust': 'customer client',
    'supp': 'supplier',
    'prod': 'product',
    'bal': 'balance',
    'rev': 'revenue sales'
}

_ABBREVIATION_PATTERN = re.compile(r'\b(' + '|'.join(ABBREVIATIONS) + r')\b', re.IGNORECASE)

ASSISTANT_PROMPT = """# System Instructions

You are an expert assistant for an inventory, sales, purchasing and accounting system. You answer questions
about the business using the context retrieved from the system's records.

## Language Rules
- Always respond in the same language as the user's question (English or Arabic).
- Never switch languages within a response.

## Context Understanding
The context below contains the most relevant records, each with its type and relevance score, followed by
insights about the data and suggested actions when available.

## Response Guidelines
1. Address the question directly, prioritizing the most relevant records.
2. Present lists of records as markdown tables with headers.
3. Include amounts, dates, statuses and names where they are relevant.
4. Mention insights and recommendations when they help answer the question.
5. If the context does not contain the answer, say that no matching records were found and suggest how to
   refine the question. Never invent data or mention internal fields.

## Conversation History
{history}

## Available Context
{context}

## User Question
{question}

## Your Response
Provide a clear, accurate and actionable answer in the user's language.
"""


def get_assistant_prompt(history: str, context: str, question: str) -> str:
    """Render the assistant prompt."""
    return ASSISTANT_PROMPT.format(history=history or 'No previous messages.',
                                   context=context or 'No context available.',
                                   question=question)


def is_arabic(text: str) -> bool:
    return bool(ARABIC_PATTERN.search(text or ''))


def language_directive(text: str) -> str:
    """Instruction telling the model which language to answer in."""
    if is_arabic(text):
        return 'IMPORTANT: The user asked in Arabic. Respond in Arabic only.'
    return 'IMPORTANT: The user asked in English. Respond in English only.'


def preprocess_query(query: str) -> str:
    """Lowercase the query and expand common abbreviations (inv, acc, cust, ...)."""
    return _ABBREVIATION_PATTERN.sub(lambda match: ABBREVIATIONS[match.group(1).lower()], query.lower())


def build_question(query: str) -> str:
    processed = preprocess_query(query)
    return f'{language_directive(processed)}\n\nQuestion: {processed}'


def format_history(messages: List[Dict[str, str]], limit: int = 0) -> str:
    """Render session messages as 'User: ...' / 'Assistant: ...' lines; limit 0 keeps all."""
    recent = messages[-limit:] if limit > 0 else messages
    return '\n'.join(f'{"User" if message["role"] == "user" else "Assistant"}: {message["content"]}' for message in recent)
