"""
Dialogue generation for the simulated caller.

A DialogueStrategy knows how one language/dialect sounds: its system
prompt, filler words and farewells. A DialogueSession holds the running
history for one conversation run and asks the strategy for the next line.

History roles follow the chat convention from the caller's side:
"user" is the simulated caller, "assistant" is the agent under test.
"""
from __future__ import annotations

import random
import structlog
from dataclasses import dataclass, field
from typing import Optional

from voice.llm import LLMService
from voice.providers import base_language

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  LANGUAGE CATALOGUE
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Dialect:
    code: str
    name: str
    native_name: str
    region: str
    filler_words: tuple[str, ...]
    greetings: tuple[str, ...]
    farewells: tuple[str, ...]
    formality: str = "mixed"          # formal | informal | mixed
    speech_pace: str = "medium"       # slow | medium | fast


@dataclass(frozen=True)
class LanguageProfile:
    code: str
    name: str
    native_name: str
    direction: str
    default_dialect: str
    dialects: dict[str, Dialect] = field(default_factory=dict)
    script_instruction: str = ""
    clause_separator: str = ","


LANGUAGES: dict[str, LanguageProfile] = {
    "ar": LanguageProfile(
        code="ar",
        name="Arabic",
        native_name="العربية",
        direction="rtl",
        default_dialect="egyptian",
        script_instruction="Respond ONLY in Arabic script (العربية)",
        clause_separator="،",
        dialects={
            "egyptian": Dialect(
                code="egyptian", name="Egyptian Arabic", native_name="مصري", region="Egypt",
                filler_words=("يعني", "طيب", "ماشي", "أصل", "والله"),
                greetings=("السلام عليكم", "أهلاً", "إزيك"),
                farewells=("مع السلامة", "باي", "يلا باي"),
                formality="informal", speech_pace="fast",
            ),
            "gulf": Dialect(
                code="gulf", name="Gulf Arabic", native_name="خليجي", region="Gulf Countries",
                filler_words=("يعني", "زين", "ماشي", "صح", "والله"),
                greetings=("السلام عليكم", "هلا", "شلونك"),
                farewells=("مع السلامة", "باي", "الله يعطيك العافية"),
                formality="mixed", speech_pace="medium",
            ),
        },
    ),
    "en": LanguageProfile(
        code="en",
        name="English",
        native_name="English",
        direction="ltr",
        default_dialect="us",
        script_instruction="Respond ONLY in English",
        dialects={
            "us": Dialect(
                code="us", name="American English", native_name="American English",
                region="United States",
                filler_words=("um", "uh", "like", "you know", "so"),
                greetings=("hello", "hi", "hey"),
                farewells=("goodbye", "bye", "see you"),
            ),
        },
    ),
}


def get_language(code: str) -> Optional[LanguageProfile]:
    """Exact code first, then the base code (en-US → en)."""
    if not code:
        return None
    return LANGUAGES.get(code) or LANGUAGES.get(base_language(code))


def get_dialect(language: str, dialect: str = "") -> Dialect:
    profile = get_language(language)
    if profile is None:
        raise ValueError(f"Unsupported language: {language}. Supported: {', '.join(LANGUAGES)}")
    found = profile.dialects.get(dialect or profile.default_dialect)
    if found is None:
        raise ValueError(f"Dialect {dialect} not found for {profile.name}")
    return found


# ══════════════════════════════════════════════════════════════
#  STRATEGY
# ══════════════════════════════════════════════════════════════

FILLER_PROBABILITY = 0.3
MAX_USER_TURNS = 10


class DialogueStrategy:
    """Language-specific prompting and end-of-call detection."""

    def __init__(self, llm: LLMService, language: str = "ar", dialect: str = "",
                 model: str = "", rng: random.Random = None):
        self.llm = llm
        self.profile = get_language(language)
        self.dialect = get_dialect(language, dialect)
        self.model = model
        self.rng = rng or random.Random()

    def system_prompt(self, persona: str, scenario: str) -> str:
        d = self.dialect
        return (
            f"You are simulating a {self.profile.name} speaker with {d.name} dialect ({d.native_name}).\n"
            f"You are having a phone conversation with a customer service agent.\n\n"
            f"Persona: {persona}\n"
            f"Scenario: {scenario}\n\n"
            f"Important guidelines:\n"
            f"- {self.profile.script_instruction}\n"
            f"- Use natural {d.name} expressions\n"
            f"- Use filler words naturally: {', '.join(d.filler_words)}\n"
            f"- Common greetings: {', '.join(d.greetings)}\n"
            f"- Common farewells: {', '.join(d.farewells)}\n"
            f"- Keep responses concise (1-2 sentences)\n"
            f"- Sound natural and conversational\n"
            f"- Match the {d.formality} tone\n"
            f"- Speak at {d.speech_pace} pace\n\n"
            f"Your goal is to have a realistic conversation that tests the agent's ability "
            f"to understand and respond to {self.profile.name} speakers."
        )

    async def generate_response(self, history: list[dict[str, str]],
                                agent_utterance: str = "") -> str:
        system = next((m["content"] for m in history if m["role"] == "system"), "")
        persona, _, scenario = system.partition("\n")
        prompt = self.system_prompt(persona or "polite_customer", scenario or "Customer inquiry")

        messages = [
            {"role": m["role"], "content": m["content"]}
            for m in history if m["role"] != "system"
        ]
        if agent_utterance:
            messages.append({"role": "assistant", "content": f"Agent said: {agent_utterance}"})
            messages.append({"role": "user", "content": "Respond naturally to what the agent just said."})
        if not messages or messages[-1]["role"] != "user":
            messages.append({"role": "user", "content": "Start or continue the call naturally."})

        text = await self.llm.complete_with_fallback(
            prompt, messages, model=self.model, max_tokens=150, temperature=0.7,
        )
        return self.add_natural_speech(text.strip())

    def add_natural_speech(self, text: str) -> str:
        """With FILLER_PROBABILITY, put a filler word at the start or after the first clause."""
        fillers = self.dialect.filler_words
        if not fillers or not text or self.rng.random() > FILLER_PROBABILITY:
            return text

        filler = self.rng.choice(fillers)
        sep = self.profile.clause_separator
        if self.rng.random() > 0.5:
            return f"{filler}{sep} {text}"

        index = text.find(sep)
        if index <= 0:
            index = text.find(".")
        if index > 0:
            return f"{text[:index + 1]} {filler}{sep}{text[index + 1:]}"
        return text

    def should_end(self, history: list[dict[str, str]]) -> bool:
        user_turns = sum(1 for m in history if m["role"] == "user")
        if user_turns >= MAX_USER_TURNS:
            return True
        recent = [m["content"].lower() for m in history[-3:]]
        return any(f.lower() in content for content in recent for f in self.dialect.farewells)


# ══════════════════════════════════════════════════════════════
#  SESSION
# ══════════════════════════════════════════════════════════════

class ConversationEnded(RuntimeError):
    pass


class DialogueSession:
    """History and turn budget for one simulated caller."""

    def __init__(self, strategy: DialogueStrategy, persona: str, scenario: str,
                 max_turns: int = 10):
        self.strategy = strategy
        self.persona = persona
        self.scenario = scenario
        self.max_turns = max_turns
        self.turn_count = 0
        self.history: list[dict[str, str]] = []
        self.reset()

    def reset(self) -> None:
        self.history = [{"role": "system", "content": f"{self.persona}\n{self.scenario}"}]
        self.turn_count = 0

    def should_end(self) -> bool:
        return self.turn_count >= self.max_turns or self.strategy.should_end(self.history)

    async def generate_response(self, agent_utterance: str = "") -> str:
        if self.should_end():
            raise ConversationEnded("Conversation has ended")
        text = await self.strategy.generate_response(self.history, agent_utterance)
        self.history.append({"role": "user", "content": text})
        self.turn_count += 1
        return text

    def add_agent_utterance(self, utterance: str) -> None:
        self.history.append({"role": "assistant", "content": utterance})
