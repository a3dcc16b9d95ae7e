"""Supported target languages and their teacher personas.

Adding a language means adding one ``LanguageConfig`` entry; STT, TTS, the
dialogue prompt and the enrichment processors all read from here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

# Cartesia "sonic" multilingual voice; override per language with TTS_VOICE_<CODE>.
_DEFAULT_VOICE_ID = "ee7ea9f8-c0c1-498c-9279-764d6b56d189"

DEFAULT_LANGUAGE_CODE = "es"


@dataclass(frozen=True)
class TeacherPersona:
    name: str
    description: str


@dataclass(frozen=True)
class LanguageConfig:
    code: str
    name: str
    native_name: str
    stt_language_code: str
    speaker_name: str
    speaking_rate: float
    teacher: TeacherPersona
    example_topics: tuple[str, ...]
    prompt_instructions: str

    @property
    def voice_id(self) -> str:
        return os.environ.get(f"TTS_VOICE_{self.code.upper()}", _DEFAULT_VOICE_ID)

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code,
            "name": self.name,
            "nativeName": self.native_name,
            "teacherName": self.teacher.name,
        }


SUPPORTED_LANGUAGES: dict[str, LanguageConfig] = {
    "es": LanguageConfig(
        code="es",
        name="Spanish",
        native_name="Español",
        stt_language_code="es-MX",
        speaker_name="Diego",
        speaking_rate=1.0,
        teacher=TeacherPersona(
            name="Señor Gael Herrera",
            description="a 35 year old 'Chilango' from Mexico City who has loaned their brain to AI",
        ),
        example_topics=(
            "Mexico City",
            "the Dunedin sound rock scene",
            "gardening",
            "the concept of brunch across cultures",
            "Balkan travel",
        ),
        prompt_instructions=(
            "- Gently correct the user if they make mistakes in Spanish\n"
            "- Use natural Mexican Spanish expressions when appropriate\n"
            "- Vary complexity based on the user's level"
        ),
    ),
    "ja": LanguageConfig(
        code="ja",
        name="Japanese",
        native_name="日本語",
        stt_language_code="ja-JP",
        speaker_name="Asuka",
        speaking_rate=0.95,
        teacher=TeacherPersona(
            name="田中先生 (Tanaka-sensei)",
            description="a 42 year old Japanese teacher from Tokyo who loves sharing Japanese culture and language",
        ),
        example_topics=(
            "Tokyo neighborhoods",
            "Japanese cuisine and izakaya culture",
            "anime and manga",
            "traditional arts like calligraphy and tea ceremony",
            "seasonal festivals (matsuri)",
        ),
        prompt_instructions=(
            "- Gently correct the user if they make mistakes in Japanese\n"
            "- Explain the difference between casual and polite forms when relevant\n"
            "- Use romaji in parentheses when introducing new vocabulary"
        ),
    ),
    "fr": LanguageConfig(
        code="fr",
        name="French",
        native_name="Français",
        stt_language_code="fr-FR",
        speaker_name="Alain",
        speaking_rate=1.0,
        teacher=TeacherPersona(
            name="Monsieur Lucien Dubois",
            description="a 38 year old Parisian who is passionate about French language, literature, and gastronomy",
        ),
        example_topics=(
            "Parisian cafés and culture",
            "French cinema",
            "regional cuisine",
            "literature from Molière to Camus",
        ),
        prompt_instructions=(
            "- Gently correct the user if they make mistakes in French\n"
            "- Point out when tu or vous fits the situation better\n"
            "- Vary complexity based on the user's level"
        ),
    ),
}


def is_supported_language(code: str | None) -> bool:
    return bool(code) and code in SUPPORTED_LANGUAGES


def get_language_config(code: str | None) -> LanguageConfig:
    """Return the config for *code*, falling back to the default language."""
    if code and code in SUPPORTED_LANGUAGES:
        return SUPPORTED_LANGUAGES[code]
    return SUPPORTED_LANGUAGES[DEFAULT_LANGUAGE_CODE]


def resolve_language_code(requested: str | None) -> str | None:
    """Resolve a client-requested language code.

    Empty or missing → the default code.  Unsupported → ``None`` so the
    caller can leave the session language untouched.
    """
    if not requested:
        return DEFAULT_LANGUAGE_CODE
    return requested if requested in SUPPORTED_LANGUAGES else None
