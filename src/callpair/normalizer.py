import re
from dataclasses import dataclass
from datetime import date, timedelta

CODE_LENGTH = 4
NAME_MAX_LENGTH = 100
DEFAULT_CALLER_NAME = "Caller"

WORD_TO_DIGIT = {
    "zero": "0", "oh": "0", "o": "0",
    "one": "1", "won": "1",
    "two": "2", "to": "2", "too": "2",
    "three": "3", "tree": "3",
    "four": "4", "for": "4", "fore": "4",
    "five": "5",
    "six": "6", "sicks": "6",
    "seven": "7",
    "eight": "8", "ate": "8", "ait": "8",
    "nine": "9", "niner": "9",
}

TEENS = {
    "ten": "10", "eleven": "11", "twelve": "12", "thirteen": "13",
    "fourteen": "14", "fifteen": "15", "sixteen": "16",
    "seventeen": "17", "eighteen": "18", "nineteen": "19",
}

TENS = {
    "twenty": "2", "thirty": "3", "forty": "4", "fifty": "5",
    "sixty": "6", "seventy": "7", "eighty": "8", "ninety": "9",
}

# Ordered: the first entry with any matching keyword wins.
VERTICAL_KEYWORDS = {
    "real_estate": ("real estate", "realestate", "real-estate", "property", "properties", "realtor"),
    "insurance": ("insurance", "insure", "policy", "policies"),
    "mortgage": ("mortgage", "loan", "loans", "lending", "home loan"),
    "other": ("other", "something else", "different", "none"),
}

PAIN_KEYWORDS = {
    "spam_flags": ("spam", "flag", "flagged", "blocked", "scam likely", "spam likely"),
    "awkward_delay": ("awkward", "delay", "pause", "waiting", "silence", "dead air"),
    "low_answer_rates": ("answer", "rate", "rates", "low answer", "nobody answers", "pickup"),
    "speed": ("speed", "slow", "fast", "quick", "efficiency", "time"),
}

AFFIRMATIVE_TOKENS = ("yes", "yeah", "sure", "okay", "yep", "absolutely", "definitely")

_FILLER_WORDS = re.compile(r"\b(um|uh|like|so|yeah|okay|ok)\b", re.IGNORECASE)
_CODE_PREAMBLE = re.compile(r"\b(the\s+)?(code\s+is|my\s+code\s+is|it's|its|is)\b", re.IGNORECASE)
_PHONE_PREAMBLE = re.compile(
    r"\b(my number is|my phone number is|it's|the number is|call me at)\b", re.IGNORECASE
)
_NAME_PREAMBLE = re.compile(r"^\s*(?:(?:my name is|i'm|i am|it's|this is|call me)\b\s*)+", re.IGNORECASE)
_NAME_FILLERS = re.compile(r"\b(um|uh|like|so|yeah)\b", re.IGNORECASE)
_DIGIT_WORD_PATTERNS = [
    (re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE), digit)
    for word, digit in WORD_TO_DIGIT.items()
]


@dataclass(frozen=True)
class CodeParse:
    matched: bool
    raw_input: str
    code: str | None = None
    normalized_digits: str | None = None


@dataclass(frozen=True)
class PhoneParse:
    matched: bool
    raw_input: str
    e164: str | None = None


def _only_digits(text: str) -> str:
    return re.sub(r"\D", "", text)


def translate_digit_words(text: str) -> str:
    """Replace whole-word spoken digits (and their usual misrecognitions) with numerals.

    Example: "for ate won tree" -> "4 8 1 3"
    """
    for pattern, digit in _DIGIT_WORD_PATTERNS:
        text = pattern.sub(digit, text)
    return text


def expand_compound_numbers(text: str) -> str:
    """Expand teens and tens words into numerals, digit by digit.

    A tens word directly followed by a single digit joins with it, so
    "forty 8 twenty 7" (from "forty eight twenty seven") becomes "4827". Expects
    digit words to have been translated already.
    """
    tokens = re.findall(r"[a-z]+|\d+", text.lower())
    out = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        nxt = tokens[i + 1] if i + 1 < len(tokens) else ""
        if tok in TENS:
            if len(nxt) == 1 and nxt in "123456789":
                out.append(TENS[tok] + nxt)
                i += 2
                continue
            out.append(TENS[tok] + "0")
        elif tok in TEENS:
            out.append(TEENS[tok])
        elif tok.isdigit():
            out.append(tok)
        i += 1
    return "".join(out)


def parse_code(transcript: str) -> CodeParse:
    """Recover a 4-digit pairing code from a speech transcript.

    Stages, each accepting exactly four digits: raw digits, spoken digit
    words, compound numbers ("forty eight"). When a stage over-captures,
    the leading four digits are used. Never raises.
    """
    if not isinstance(transcript, str) or not transcript.strip():
        return CodeParse(matched=False, raw_input=transcript if isinstance(transcript, str) else "")

    raw_input = transcript.strip()
    normalized = _CODE_PREAMBLE.sub(" ", raw_input.lower())
    normalized = _FILLER_WORDS.sub(" ", normalized).strip()

    direct = _only_digits(normalized)
    if len(direct) == CODE_LENGTH:
        return CodeParse(True, raw_input, code=direct, normalized_digits=direct)

    converted = translate_digit_words(normalized)
    digits = _only_digits(converted)
    if len(digits) == CODE_LENGTH:
        return CodeParse(True, raw_input, code=digits, normalized_digits=digits)

    compound = expand_compound_numbers(converted)
    if len(compound) == CODE_LENGTH:
        return CodeParse(True, raw_input, code=compound, normalized_digits=compound)

    for candidate in (digits, compound):
        if len(candidate) > CODE_LENGTH:
            leading = candidate[:CODE_LENGTH]
            return CodeParse(True, raw_input, code=leading, normalized_digits=leading)

    return CodeParse(False, raw_input, normalized_digits=digits or None)


def parse_phone_number(transcript: str) -> PhoneParse:
    """Recover a North American number as E.164.

    Over-captured numbers keep the trailing ten digits, the opposite of
    parse_code, since the noise is usually a leading country/carrier artifact.
    """
    if not isinstance(transcript, str) or not transcript.strip():
        return PhoneParse(matched=False, raw_input=transcript if isinstance(transcript, str) else "")

    raw_input = transcript.strip()
    normalized = _PHONE_PREAMBLE.sub(" ", raw_input.lower())
    normalized = _FILLER_WORDS.sub(" ", normalized).strip()
    digits = _only_digits(translate_digit_words(normalized))

    if len(digits) == 10:
        return PhoneParse(True, raw_input, e164=f"+1{digits}")
    if len(digits) == 11 and digits[0] == "1":
        return PhoneParse(True, raw_input, e164=f"+{digits}")
    if len(digits) > 10:
        return PhoneParse(True, raw_input, e164=f"+1{digits[-10:]}")
    return PhoneParse(False, raw_input)


def parse_category(transcript: str, table: dict[str, tuple[str, ...]]) -> str | None:
    """Return the first key in table order whose keywords appear in the transcript."""
    if not isinstance(transcript, str):
        return None
    text = transcript.lower().strip()
    if not text:
        return None
    for key, keywords in table.items():
        if any(kw in text for kw in keywords):
            return key
    return None


def parse_vertical(transcript: str) -> str | None:
    return parse_category(transcript, VERTICAL_KEYWORDS)


def parse_pain(transcript: str) -> str | None:
    return parse_category(transcript, PAIN_KEYWORDS)


def is_affirmative(transcript: str) -> bool:
    if not isinstance(transcript, str):
        return False
    text = transcript.lower()
    return any(tok in text for tok in AFFIRMATIVE_TOKENS)


def sanitize_name(transcript: str) -> str:
    """Turn "um, my name is chris!" into "Chris"; falls back to "Caller"."""
    if not isinstance(transcript, str):
        return DEFAULT_CALLER_NAME
    text = _NAME_FILLERS.sub(" ", transcript)
    text = re.sub(r"[^a-zA-Z\s'-]", " ", text)
    text = _NAME_PREAMBLE.sub("", text)
    words = [w[:1].upper() + w[1:].lower() for w in text.split()]
    name = " ".join(words)[:NAME_MAX_LENGTH].strip()
    return name or DEFAULT_CALLER_NAME


def mask_phone(phone: str | None) -> str:
    if not phone or len(phone) < 4:
        return "****"
    return f"(***) ***-{phone[-4:]}"


def format_phone_for_speech(phone: str) -> str:
    """"+14155551234" -> "415, 555, 1234" so TTS reads it in groups."""
    digits = _only_digits(phone or "")
    if len(digits) == 11 and digits[0] == "1":
        digits = digits[1:]
    if len(digits) == 10:
        return f"{digits[:3]}, {digits[3:6]}, {digits[6:]}"
    return " ".join(digits)


def display_key(key: str) -> str:
    """"low_answer_rates" -> "low answer rates" for spoken read-backs."""
    return key.replace("_", " ")


def next_business_day(today: date) -> date:
    day = today + timedelta(days=1)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def format_appointment_date(day: date) -> str:
    return f"{day.strftime('%A')}, {day.strftime('%B')} {day.day}"
