"""Pure-computation tools: arithmetic, unit conversion, health estimates, text."""

from __future__ import annotations

import ast
import math
import operator
import random
import re
from datetime import datetime
from typing import Any, Callable, Mapping

from .registry import ToolDefinition, ToolInputError, ToolRegistry

_WEEKDAYS = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


def _require_number(args: Mapping[str, Any], key: str, *, positive: bool = True) -> float:
    value = args.get(key)
    if isinstance(value, bool) or value is None:
        raise ToolInputError(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ToolInputError(f"{key} must be a number") from exc
    if not math.isfinite(number):
        raise ToolInputError(f"{key} must be finite")
    if positive and number <= 0:
        raise ToolInputError(f"{key} must be positive")
    return number


def _require_text(args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolInputError(f"{key} must be a non-empty string")
    return value


def _require_choice(args: Mapping[str, Any], key: str, choices: tuple[str, ...]) -> str:
    value = args.get(key)
    if value not in choices:
        raise ToolInputError(f"{key} must be one of: {', '.join(choices)}")
    return value


# --- general -----------------------------------------------------------------


def get_current_time(args: Mapping[str, Any]) -> dict[str, Any]:
    now = datetime.now().astimezone()
    return {
        "now": now.isoformat(timespec="seconds"),
        "date": now.date().isoformat(),
        "time": now.strftime("%H:%M:%S"),
        "timezone": now.tzname(),
        "timestamp": int(now.timestamp() * 1000),
        "weekday": _WEEKDAYS[now.weekday()],
    }


_BINARY_OPERATORS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPERATORS: dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_CONSTANTS = {"pi": math.pi, "e": math.e}
_MAX_EXPONENT = 1000
_MAX_RESULT_DIGITS = 400


def _power(base: Any, exponent: Any) -> Any:
    # Estimate the result size before computing it; big-int powers run on the event loop
    if abs(exponent) > _MAX_EXPONENT:
        raise ToolInputError("Exponent too large")
    magnitude = abs(base)
    if magnitude > 1 and exponent > 0:
        if exponent * math.log10(magnitude) > _MAX_RESULT_DIGITS:
            raise ToolInputError("Result too large")
    return operator.pow(base, exponent)


_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "sqrt": math.sqrt,
    "pow": _power,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "log": math.log,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
}


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        if isinstance(node.value, bool):
            raise ToolInputError("Booleans are not numbers")
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow):
            return _power(left, right)
        return _BINARY_OPERATORS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in _FUNCTIONS
        and not node.keywords
    ):
        return _FUNCTIONS[node.func.id](*(_evaluate(arg) for arg in node.args))
    raise ToolInputError("Unsupported expression")


def calculate(args: Mapping[str, Any]) -> dict[str, Any]:
    expression = _require_text(args, "expression").strip()
    normalized = expression.replace("^", "**").replace("×", "*").replace("÷", "/")
    try:
        tree = ast.parse(normalized, mode="eval")
        result = _evaluate(tree)
    except ToolInputError:
        raise
    except (SyntaxError, ZeroDivisionError, ValueError, TypeError, OverflowError) as exc:
        raise ToolInputError(f"Calculation failed: {exc}") from exc
    if not isinstance(result, (int, float)) or not math.isfinite(result):
        raise ToolInputError("Calculation result is not a finite number")
    return {"expression": expression, "result": result, "rounded": round(result, 2)}


# --- unit conversion -----------------------------------------------------------

_TO_BASE: dict[str, dict[str, float]] = {
    "length": {
        "mm": 0.001,
        "cm": 0.01,
        "m": 1.0,
        "km": 1000.0,
        "inch": 0.0254,
        "ft": 0.3048,
        "yd": 0.9144,
        "mile": 1609.34,
    },
    "weight": {
        "mg": 0.000001,
        "g": 0.001,
        "kg": 1.0,
        "t": 1000.0,
        "oz": 0.0283495,
        "lb": 0.453592,
    },
    "volume": {
        "ml": 0.001,
        "l": 1.0,
        "m3": 1000.0,
        "fl_oz": 0.0295735,
        "cup": 0.236588,
        "pint": 0.473176,
        "gallon": 3.78541,
    },
}

_TEMPERATURE_TO_CELSIUS: dict[str, Callable[[float], float]] = {
    "celsius": lambda v: v,
    "fahrenheit": lambda v: (v - 32) * 5 / 9,
    "kelvin": lambda v: v - 273.15,
}
_TEMPERATURE_FROM_CELSIUS: dict[str, Callable[[float], float]] = {
    "celsius": lambda v: v,
    "fahrenheit": lambda v: v * 9 / 5 + 32,
    "kelvin": lambda v: v + 273.15,
}


def unit_converter(args: Mapping[str, Any]) -> dict[str, Any]:
    value = _require_number(args, "value", positive=False)
    category = _require_choice(
        args, "category", ("length", "weight", "temperature", "volume")
    )
    from_unit = _require_text(args, "from_unit")
    to_unit = _require_text(args, "to_unit")
    source = from_unit.strip().lower()
    target = to_unit.strip().lower()

    if category == "temperature":
        if source not in _TEMPERATURE_TO_CELSIUS or target not in _TEMPERATURE_FROM_CELSIUS:
            raise ToolInputError(f"Unsupported temperature units: {source} to {target}")
        result = _TEMPERATURE_FROM_CELSIUS[target](_TEMPERATURE_TO_CELSIUS[source](value))
    else:
        table = _TO_BASE[category]
        if source not in table or target not in table:
            raise ToolInputError(f"Unsupported {category} units: {source} or {target}")
        result = value * table[source] / table[target]

    return {
        "value": value,
        "from_unit": from_unit,
        "to_unit": to_unit,
        "result": round(result, 4),
        "category": category,
    }


# --- health estimates ------------------------------------------------------------

_ACTIVITY_FACTORS = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "active": 1.725,
    "very_active": 1.9,
}


def calculate_bmi(args: Mapping[str, Any]) -> dict[str, Any]:
    height_cm = _require_number(args, "height_cm")
    weight_kg = _require_number(args, "weight_kg")
    height_m = height_cm / 100
    bmi = round(weight_kg / (height_m * height_m), 1)

    # Asian cut-offs
    if bmi < 18.5:
        category = "underweight"
    elif bmi < 23:
        category = "normal"
    elif bmi < 27.5:
        category = "overweight"
    else:
        category = "obese"
    return {"bmi": bmi, "category": category}


def estimate_daily_calories(args: Mapping[str, Any]) -> dict[str, Any]:
    sex = _require_choice(args, "sex", ("male", "female"))
    age = _require_number(args, "age")
    height_cm = _require_number(args, "height_cm")
    weight_kg = _require_number(args, "weight_kg")
    activity = _require_choice(args, "activity_level", tuple(_ACTIVITY_FACTORS))

    bmr = 10 * weight_kg + 6.25 * height_cm - 5 * age
    bmr += 5 if sex == "male" else -161
    factor = _ACTIVITY_FACTORS[activity]
    return {
        "bmr": round(bmr),
        "tdee": round(bmr * factor),
        "activity_factor": factor,
        "formula": "Mifflin-St Jeor + activity factor",
    }


def calculate_body_fat_percentage(args: Mapping[str, Any]) -> dict[str, Any]:
    bmi = _require_number(args, "bmi")
    age = _require_number(args, "age")
    sex = _require_choice(args, "sex", ("male", "female"))

    # Deurenberg
    body_fat = 1.2 * bmi + 0.23 * age - (16.2 if sex == "male" else 5.4)
    clamped = max(5.0, min(50.0, round(body_fat, 1)))

    thresholds = (10, 20, 25) if sex == "male" else (16, 25, 30)
    if clamped < thresholds[0]:
        category = "lean"
    elif clamped < thresholds[1]:
        category = "normal"
    elif clamped < thresholds[2]:
        category = "elevated"
    else:
        category = "high"
    return {
        "body_fat_percentage": clamped,
        "category": category,
        "note": "Estimate from BMI and age only; use dedicated equipment for accuracy.",
    }


def calculate_ideal_weight(args: Mapping[str, Any]) -> dict[str, Any]:
    height_cm = _require_number(args, "height_cm")
    _require_choice(args, "sex", ("male", "female"))
    height_m = height_cm / 100
    min_bmi, max_bmi = 18.5, 23.9
    return {
        "height_cm": height_cm,
        "ideal_weight_range_kg": {
            "min": round(min_bmi * height_m * height_m, 1),
            "max": round(max_bmi * height_m * height_m, 1),
        },
        "bmi_range": {"min": min_bmi, "max": max_bmi},
        "note": "Based on the Asian normal BMI range (18.5-23.9).",
    }


# --- text ---------------------------------------------------------------------------

_SENTENCE_END_RE = re.compile(r"[.!?。！？]+")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")


def text_analyzer(args: Mapping[str, Any]) -> dict[str, Any]:
    text = args.get("text")
    if not isinstance(text, str):
        raise ToolInputError("text must be a string")
    stripped = text.strip()
    words = len(stripped.split()) if stripped else 0
    paragraphs = (
        len([p for p in _PARAGRAPH_RE.split(text) if p.strip()]) if stripped else 0
    )
    return {
        "character_count": len(text),
        "character_count_no_spaces": len(re.sub(r"\s", "", text)),
        "word_count": words,
        "paragraph_count": paragraphs,
        "sentence_count": len(_SENTENCE_END_RE.findall(text)),
        "estimated_reading_time_minutes": math.ceil(words / 200),
    }


def generate_random(args: Mapping[str, Any]) -> dict[str, Any]:
    kind = _require_choice(args, "type", ("number", "choice"))
    if kind == "number":
        low = args.get("min", 0)
        high = args.get("max", 100)
        try:
            low_int = math.ceil(float(low))
            high_int = math.floor(float(high))
        except (TypeError, ValueError) as exc:
            raise ToolInputError("min and max must be numbers") from exc
        if low_int >= high_int:
            raise ToolInputError("min must be smaller than max")
        return {
            "type": "number",
            "result": random.randint(low_int, high_int),
            "range": {"min": low_int, "max": high_int},
        }

    options = args.get("options")
    if not isinstance(options, list) or not options:
        raise ToolInputError("options must be a non-empty list")
    return {"type": "choice", "result": random.choice(options), "options": options}


_LANGUAGE_NAMES = {
    "zh": "Chinese",
    "en": "English",
    "ja": "Japanese",
    "ko": "Korean",
    "fr": "French",
    "de": "German",
    "es": "Spanish",
    "ru": "Russian",
    "ar": "Arabic",
    "pt": "Portuguese",
    "it": "Italian",
    "nl": "Dutch",
    "vi": "Vietnamese",
    "th": "Thai",
    "auto": "auto-detect",
}


def translate_text(args: Mapping[str, Any]) -> dict[str, Any]:
    text = _require_text(args, "text")
    to_lang = _require_text(args, "to_lang").strip()
    from_lang = args.get("from_lang") or "auto"
    from_name = _LANGUAGE_NAMES.get(str(from_lang).lower(), str(from_lang))
    to_name = _LANGUAGE_NAMES.get(to_lang.lower(), to_lang)

    if from_lang != "auto" and str(from_lang).lower() == to_lang.lower():
        return {
            "original_text": text,
            "translated_text": text,
            "from_language": from_name,
            "to_language": to_name,
            "note": "Source and target languages are the same.",
        }

    # The model performs the translation itself in its answer.
    return {
        "original_text": text,
        "translation_request": {"from_language": from_name, "to_language": to_name},
        "instruction": (
            f"Translate the text from {from_name} to {to_name}, keeping the meaning "
            "precise, the phrasing idiomatic, and terminology consistent."
        ),
    }


_SCRIPT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("ja", re.compile(r"[぀-ゟ゠-ヿ]")),
    ("ko", re.compile(r"[가-힣]")),
    ("zh", re.compile(r"[一-鿿]")),
    ("ar", re.compile(r"[؀-ۿ]")),
    ("ru", re.compile(r"[Ѐ-ӿ]")),
    ("th", re.compile(r"[฀-๿]")),
)
_LATIN_ONLY_RE = re.compile(r"^[a-zA-Z\s.,!?'\-]+$")
_CJK_PUNCTUATION_RE = re.compile(r"[，。！？；：、]")


def detect_language(args: Mapping[str, Any]) -> dict[str, Any]:
    text = _require_text(args, "text")

    detected = None
    for code, pattern in _SCRIPT_PATTERNS:
        if pattern.search(text):
            detected = code
            break
    confident = detected is not None
    if detected is None:
        if _CJK_PUNCTUATION_RE.search(text):
            detected = "zh"
        elif _LATIN_ONLY_RE.match(text.strip()):
            detected = "en"
        else:
            detected = "unknown"

    return {
        "text": text[:100] + ("..." if len(text) > 100 else ""),
        "detected_language": _LANGUAGE_NAMES.get(detected, detected),
        "language_code": detected,
        "confidence": "high" if confident else "medium",
        "character_count": len(text),
    }


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register every pure-computation tool on ``registry``."""

    number = {"type": "number"}
    sex = {"type": "string", "enum": ["male", "female"]}

    registry.register(
        ToolDefinition(
            name="get_current_time",
            description="Get the current local date, time, and weekday.",
            parameters=_schema({}, []),
        ),
        get_current_time,
    )
    registry.register(
        ToolDefinition(
            name="calculate",
            description="Evaluate an arithmetic expression (+ - * / ** %, sqrt, pow).",
            parameters=_schema(
                {
                    "expression": {
                        "type": "string",
                        "description": "Expression such as '2+3*4' or 'sqrt(16)'",
                    }
                },
                ["expression"],
            ),
        ),
        calculate,
    )
    registry.register(
        ToolDefinition(
            name="unit_converter",
            description="Convert length, weight, temperature, or volume units.",
            parameters=_schema(
                {
                    "value": dict(number, description="Value to convert"),
                    "from_unit": {"type": "string", "description": "e.g. cm, kg, celsius"},
                    "to_unit": {"type": "string", "description": "e.g. m, g, fahrenheit"},
                    "category": {
                        "type": "string",
                        "enum": ["length", "weight", "temperature", "volume"],
                    },
                },
                ["value", "from_unit", "to_unit", "category"],
            ),
        ),
        unit_converter,
    )
    registry.register(
        ToolDefinition(
            name="calculate_bmi",
            description="Compute BMI and its category (Asian cut-offs).",
            parameters=_schema(
                {
                    "height_cm": dict(number, description="Height in centimetres"),
                    "weight_kg": dict(number, description="Weight in kilograms"),
                },
                ["height_cm", "weight_kg"],
            ),
        ),
        calculate_bmi,
    )
    registry.register(
        ToolDefinition(
            name="estimate_daily_calories",
            description=(
                "Estimate basal metabolic rate and daily energy expenditure "
                "(Mifflin-St Jeor with an activity factor)."
            ),
            parameters=_schema(
                {
                    "sex": sex,
                    "age": dict(number, description="Age in years"),
                    "height_cm": number,
                    "weight_kg": number,
                    "activity_level": {
                        "type": "string",
                        "enum": list(_ACTIVITY_FACTORS),
                    },
                },
                ["sex", "age", "height_cm", "weight_kg", "activity_level"],
            ),
        ),
        estimate_daily_calories,
    )
    registry.register(
        ToolDefinition(
            name="calculate_body_fat_percentage",
            description="Estimate body fat percentage from BMI, age, and sex.",
            parameters=_schema(
                {"bmi": number, "age": number, "sex": sex}, ["bmi", "age", "sex"]
            ),
        ),
        calculate_body_fat_percentage,
    )
    registry.register(
        ToolDefinition(
            name="calculate_ideal_weight",
            description="Compute an ideal weight range from height.",
            parameters=_schema({"height_cm": number, "sex": sex}, ["height_cm", "sex"]),
        ),
        calculate_ideal_weight,
    )
    registry.register(
        ToolDefinition(
            name="text_analyzer",
            description="Count characters, words, sentences, and paragraphs in a text.",
            parameters=_schema({"text": {"type": "string"}}, ["text"]),
        ),
        text_analyzer,
    )
    registry.register(
        ToolDefinition(
            name="generate_random",
            description="Generate a random integer or pick a random option.",
            parameters=_schema(
                {
                    "type": {"type": "string", "enum": ["number", "choice"]},
                    "min": number,
                    "max": number,
                    "options": {"type": "array", "items": {"type": "string"}},
                },
                ["type"],
            ),
        ),
        generate_random,
    )
    registry.register(
        ToolDefinition(
            name="translate_text",
            description="Prepare a translation of text into a target language.",
            parameters=_schema(
                {
                    "text": {"type": "string"},
                    "from_lang": {
                        "type": "string",
                        "description": "Source language code or 'auto'",
                        "default": "auto",
                    },
                    "to_lang": {"type": "string", "description": "Target language code"},
                },
                ["text", "to_lang"],
            ),
        ),
        translate_text,
    )
    registry.register(
        ToolDefinition(
            name="detect_language",
            description="Detect the language of a text from its script.",
            parameters=_schema({"text": {"type": "string"}}, ["text"]),
        ),
        detect_language,
    )


__all__ = [
    "calculate",
    "calculate_bmi",
    "calculate_body_fat_percentage",
    "calculate_ideal_weight",
    "detect_language",
    "estimate_daily_calories",
    "generate_random",
    "get_current_time",
    "register_builtin_tools",
    "text_analyzer",
    "translate_text",
    "unit_converter",
]
