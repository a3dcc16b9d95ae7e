"""Prompt templates for the tutor dialogue and the enrichment processors.

Every template is a ``langchain_core`` ``ChatPromptTemplate`` in f-string
format, so literal JSON braces are doubled.  Conversation history is rendered
as ``role: content`` lines rather than chat turns; interrupted turns may leave
two assistant messages in a row, which the Messages API would merge anyway.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from langchain_core.messages import BaseMessage
from langchain_core.prompts import ChatPromptTemplate

from ..db import MemoryMatch
from ..languages import LanguageConfig
from ..pipeline.session_context import ChatMessage

_DIALOGUE_SYSTEM = """You are {teacher_name}, {teacher_description}. You teach {target_language} ({target_language_native}) through relaxed spoken conversation.

Help the learner practise {target_language} by talking with them naturally. Good topics include {example_topics}.

{prompt_instructions}
- Your reply is spoken aloud: no lists, no markdown, no emoji
- Do not speak too much; answer in 1-2 short sentences and leave room for the learner
{memories_section}{history_section}"""

DIALOGUE_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", _DIALOGUE_SYSTEM),
        ("human", "{current_input}"),
    ]
)

FLASHCARD_PROMPT = ChatPromptTemplate.from_template(
    """You are a system that generates flashcards for a language learning app.

Based on the ongoing conversation between the student and {teacher_name}, generate one flashcard for a {target_language} word with:

- The word in {target_language}
- The translation in English
- An example sentence in {target_language}
- A mnemonic to help the student remember the word

## Conversation

{conversation}

## Already Created Flashcards

{existing_words}

## Guidelines

- The word must NOT have been used in the conversation yet
- The word must relate to the topics of the conversation
- Match the learner's level: simple, common words for beginners, richer vocabulary for advanced learners
- The word should help the learner continue the conversation

Now, return JSON with the following format:

{{
  "targetWord": "string",
  "english": "string",
  "example": "string",
  "mnemonic": "string"
}}"""
)

FEEDBACK_PROMPT = ChatPromptTemplate.from_template(
    """You are a {target_language} language tutor assistant. Your task is to analyze the student's most recent utterance and provide brief, helpful feedback.

## Conversation so far:
{conversation}

## Student's last utterance:
{current_transcript}

## Instructions:
- If the student made grammar, vocabulary, or word-choice errors in their {target_language}, offer a gentle correction
- If the response was good, offer a brief word of encouragement or a small tip to improve
- Keep your feedback to exactly ONE sentence in English
- Be encouraging and constructive

Your feedback (one sentence in English):"""
)

MEMORY_PROMPT = ChatPromptTemplate.from_template(
    """You maintain long-term memory for a {target_language} tutor. Read the recent conversation and decide whether it reveals something worth remembering about the learner in future sessions.

## Conversation
{conversation}

## What to remember
- learning_progress: vocabulary or grammar the learner struggles with or has mastered, their level, recurring mistakes
- personal_context: interests, job, family, travel plans, anything that makes future conversations personal

Write the memory in English as one short third-person sentence ("The learner ..."). If nothing is worth remembering, return an empty memory.

Return JSON only:

{{
  "memory": "string",
  "type": "learning_progress" | "personal_context",
  "topics": ["string"],
  "importance": 0.0
}}"""
)

INTRODUCTION_PROMPT = ChatPromptTemplate.from_template(
    """You extract introduction details from the start of a {target_language} lesson.

## Conversation
{conversation}

## Already known
name: {known_name}
level: {known_level}
goal: {known_goal}

From the conversation, identify the learner's name, their self-described {target_language} level (beginner, intermediate or advanced) and why they are learning. Use an empty string for anything not stated.

Return JSON only:

{{
  "name": "string",
  "level": "beginner" | "intermediate" | "advanced" | "",
  "goal": "string"
}}"""
)


def render_conversation(messages: Iterable[ChatMessage]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


def _memories_section(memories: Sequence[MemoryMatch]) -> str:
    if not memories:
        return ""
    lines = "\n".join(f"- {m.content}" for m in memories)
    return f"\nThings you remember about this learner from earlier sessions:\n{lines}\n"


def _history_section(history: Sequence[ChatMessage]) -> str:
    if not history:
        return ""
    return f"\nPrevious conversation:\n{render_conversation(history)}\n"


def build_dialogue_messages(
    language: LanguageConfig,
    history: Sequence[ChatMessage],
    current_input: str,
    memories: Sequence[MemoryMatch] = (),
) -> list[BaseMessage]:
    """System prompt with persona, memories and history, then the learner's turn."""
    return DIALOGUE_PROMPT.format_messages(
        teacher_name=language.teacher.name,
        teacher_description=language.teacher.description,
        target_language=language.name,
        target_language_native=language.native_name,
        example_topics=", ".join(language.example_topics),
        prompt_instructions=language.prompt_instructions,
        memories_section=_memories_section(memories),
        history_section=_history_section(history),
        current_input=current_input,
    )
