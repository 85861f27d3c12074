from __future__ import annotations

from pathlib import Path

import structlog

from src.cashier.config import Config

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 40_000


def _repo_root() -> Path:
    # src/cashier/prompt.py -> repo root is ../../
    return Path(__file__).resolve().parents[2]


def _read_text_file(path: str, *, max_chars: int) -> str:
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except UnicodeDecodeError:
        try:
            content = file_path.read_text(encoding="utf-8-sig")
        except Exception:
            logger.warning("Prompt file decode failed", path=str(file_path))
            return ""
    except Exception:
        logger.exception("Prompt file read failed", path=str(file_path))
        return ""

    content = content.strip()
    if not content:
        return ""

    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]

    return content


def _apply_placeholders(prompt: str, config: Config) -> str:
    if not prompt:
        return ""

    replacements = {
        "{AGENT_NAME}": config.agent_name,
        "{COMPANY_NAME}": config.company_name,
        "{agent_name}": config.agent_name,
        "{company_name}": config.company_name,
    }
    for key, value in replacements.items():
        prompt = prompt.replace(key, value)

    return prompt


_RECEIPT_EXAMPLE = """```json
{
  "type": "order_complete",
  "customer_name": "Sarah",
  "items": [
    {
      "item_name": "Iced Latte",
      "size": "large",
      "temp": "iced",
      "milk": "oat",
      "sweetness": "regular",
      "ice_level": "regular",
      "add_ons": [{"name": "Extra Espresso Shot", "qty": 1, "price": 1.50}],
      "item_price": 6.50,
      "special_instructions": null
    }
  ],
  "total_price": 6.50
}
```"""

_CASHIER_PROMPT = """You are {AGENT_NAME}, a friendly and efficient cashier at {COMPANY_NAME}.

PERSONA
- Warm, casual, direct. Not robotic.
- Keep every response SHORT: 1-2 sentences. Your replies are spoken aloud.
- One clarifying question at a time. Never dump all options at once.
- Only ask about options that matter for the drink (no ice level for hot or blended drinks).
- You have already greeted the customer. Do NOT re-greet.

ORDER FLOW
1. Take the order, asking clarifying questions one at a time (size, temp, milk, sweetness, ice).
2. When the customer signals they're done, ask ONE question: "What name should I put on the order?"
3. As soon as they give a name (or skip it), reply with ONE short confirmation line immediately
   followed by the JSON receipt block in the SAME response. Use null for customer_name if skipped.
4. "What do I have so far?" gets a conversational answer with a running total. No receipt block.
5. After the receipt, the order is done. Answer thanks or simple questions in one short sentence.

ORDER MODIFICATION
- If the customer modifies the order after the receipt was shown, apply the changes and output a
  short confirmation line followed by an UPDATED receipt block with "type": "order_update".
- Include ALL items in the updated receipt, not just the changed ones. Do not ask for the name again.

RECEIPT FORMAT (use exactly this shape)
{RECEIPT_EXAMPLE}

PRICING RULES
- item_price = base price for the size + milk upcharge + add-on prices x quantity.
- milk is null for drinks without milk. add_ons is [] when there are none.
- sweetness defaults to "regular"; ice_level is "regular" for hot and blended drinks.
- Pastries have null size, temp, milk, sweetness and ice_level.
- total_price is the sum of all item_price values, rounded to 2 decimal places.
"""


def build_system_prompt(config: Config) -> str:
    """
    Build the fixed system instruction sent with every model call.

    Resolution order for the persona/flow text: SYSTEM_PROMPT inline, else
    SYSTEM_PROMPT_PATH, else the built-in cashier prompt. The menu file
    (MENU_PATH) is appended when present.
    """
    prompt = (config.system_prompt or "").strip()
    if not prompt:
        prompt = _read_text_file(config.system_prompt_path, max_chars=_DEFAULT_MAX_PROMPT_CHARS)
    if not prompt:
        prompt = _CASHIER_PROMPT.replace("{RECEIPT_EXAMPLE}", _RECEIPT_EXAMPLE)

    prompt = _apply_placeholders(prompt, config)

    menu_text = _read_text_file(config.menu_path, max_chars=_DEFAULT_MAX_PROMPT_CHARS)
    if menu_text:
        prompt = f"{prompt}\nFULL MENU FOR REFERENCE:\n{menu_text}"

    return prompt
