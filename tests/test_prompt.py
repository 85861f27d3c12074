from dataclasses import replace

from src.cashier.prompt import build_system_prompt


def test_builtin_prompt_has_persona_and_receipt_format(test_config):
    prompt = build_system_prompt(replace(test_config, agent_name="Jo", company_name="Bean There"))

    assert "You are Jo, a friendly and efficient cashier at Bean There." in prompt
    assert '"type": "order_complete"' in prompt
    assert "{RECEIPT_EXAMPLE}" not in prompt


def test_inline_prompt_wins(test_config):
    prompt = build_system_prompt(replace(test_config, system_prompt="Be {AGENT_NAME}."))

    assert prompt == "Be Alex."


def test_prompt_file_and_menu_appended(test_config, tmp_path):
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("You work at {COMPANY_NAME}.", encoding="utf-8")
    menu_file = tmp_path / "menu.txt"
    menu_file.write_text("Latte small 4.00 / large 5.00", encoding="utf-8")

    prompt = build_system_prompt(
        replace(test_config, system_prompt_path=str(prompt_file), menu_path=str(menu_file))
    )

    assert prompt.startswith("You work at NYC Coffee.")
    assert prompt.endswith("FULL MENU FOR REFERENCE:\nLatte small 4.00 / large 5.00")


def test_missing_files_fall_back(test_config):
    prompt = build_system_prompt(
        replace(test_config, system_prompt_path="does/not/exist.txt", menu_path="nope.txt")
    )

    assert "FULL MENU" not in prompt
    assert "ORDER FLOW" in prompt
