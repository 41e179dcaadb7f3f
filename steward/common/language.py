"""
Language Detection

Per-message language detection using Unicode script ranges, with langdetect
as a tie-breaker for mixed-script text. Used to pick the language of the
acknowledgements sent back to a submitter.
"""

import re
from dataclasses import dataclass
from typing import Optional

from langdetect import DetectorFactory, LangDetectException, detect_langs

# Seed langdetect for deterministic results
DetectorFactory.seed = 0

# Characters that only appear in one of the two Chinese scripts
_SIMPLIFIED_ONLY_RE = re.compile(r"[这个们会说对没关机开时为么让给从远进还边记录]")
_TRADITIONAL_ONLY_RE = re.compile(r"[這個們會說對沒關機開時為麼讓給從遠進還邊記錄]")


@dataclass(frozen=True)
class LanguageInfo:
    """Detected language information"""
    code: str           # "en", "zh-TW", "zh-CN", "ja", "ko"
    confidence: float   # 0.0~1.0
    script: str         # "Latin", "Hangul", "CJK", "Kana", "Mixed"

    @property
    def is_chinese(self) -> bool:
        return self.code.startswith("zh")


# Unicode range based script detection
_SCRIPT_RANGES = [
    (0xAC00, 0xD7AF, "Hangul", "ko"),    # Hangul Syllables
    (0x1100, 0x11FF, "Hangul", "ko"),    # Hangul Jamo
    (0x3130, 0x318F, "Hangul", "ko"),    # Hangul Compatibility Jamo
    (0x3040, 0x309F, "Kana", "ja"),      # Hiragana
    (0x30A0, 0x30FF, "Kana", "ja"),      # Katakana
    (0x4E00, 0x9FFF, "CJK", "zh"),       # CJK Unified Ideographs
    (0x3400, 0x4DBF, "CJK", "zh"),       # CJK Extension A
]


def _detect_script(text: str) -> tuple[str, Optional[str]]:
    """Detect dominant script from Unicode character ranges.

    Returns:
        (script_name, language_code) or ("Latin", None) when no CJK/Hangul/Kana
    """
    script_counts: dict[str, int] = {}
    script_lang: dict[str, str] = {}

    for ch in text:
        cp = ord(ch)
        for start, end, script, lang in _SCRIPT_RANGES:
            if start <= cp <= end:
                script_counts[script] = script_counts.get(script, 0) + 1
                script_lang[script] = lang
                break

    if not script_counts:
        return "Latin", None

    # Any kana means Japanese, which also borrows CJK ideographs
    if "Kana" in script_counts:
        return "Kana", "ja"

    if len(script_counts) > 1:
        return "Mixed", None

    script = next(iter(script_counts))
    return script, script_lang[script]


def _chinese_variant(text: str) -> str:
    has_simplified = bool(_SIMPLIFIED_ONLY_RE.search(text))
    has_traditional = bool(_TRADITIONAL_ONLY_RE.search(text))
    if has_simplified and not has_traditional:
        return "zh-CN"
    return "zh-TW"


def detect_language(text: str) -> LanguageInfo:
    """Detect language of input text.

    Script ranges decide for Hangul, Kana and CJK text (Chinese is split
    into Traditional/Simplified by script-specific characters). Mixed
    scripts are resolved with langdetect. Latin text defaults to English.
    """
    if not text or not text.strip():
        return LanguageInfo(code="en", confidence=1.0, script="Latin")

    cleaned = text.strip()
    script, lang = _detect_script(cleaned)

    if lang == "zh":
        return LanguageInfo(code=_chinese_variant(cleaned), confidence=0.9, script=script)
    if lang:
        return LanguageInfo(code=lang, confidence=0.9, script=script)

    if script == "Mixed":
        try:
            results = detect_langs(cleaned)
        except LangDetectException:
            results = []
        if results:
            top = results[0]
            code = top.lang
            if code.startswith("zh"):
                code = _chinese_variant(cleaned)
            return LanguageInfo(code=code, confidence=round(top.prob, 4), script=script)
        return LanguageInfo(code="en", confidence=0.3, script=script)

    return LanguageInfo(code="en", confidence=0.5, script="Latin")
