"""Tests for the workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

import setup_excel
from attire_erp import constants


def _write_config(directory, data_file="store.xlsx"):
    config_path = directory / "config.ini"
    config_path.write_text(f"[System]\nDataFile = {data_file}\nShopName = Bridal Row\n")
    return config_path


def test_run_from_config_resolves_relative_data_file(tmp_path):
    config_path = _write_config(tmp_path)

    created = setup_excel.run_from_config(config_path)

    assert created == (tmp_path / "store.xlsx").resolve()
    workbook = openpyxl.load_workbook(created)
    counters = workbook[constants.SheetName.COUNTERS.value]
    assert [row for row in counters.iter_rows(min_row=2, values_only=True)] == [
        (constants.CounterName.ORDER_CODE.value, constants.ORDER_CODE_START, 0),
        (constants.CounterName.PRODUCT_CODE.value, constants.PRODUCT_CODE_START, 0),
    ]


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    target = setup_excel.create_master_workbook(tmp_path / "store.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(target)


def test_main_requires_force_for_existing_workbook(tmp_path, capsys):
    config_path = _write_config(tmp_path)

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_load_settings_requires_system_entries(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = store.xlsx\n")

    with pytest.raises(KeyError):
        setup_excel.load_settings(config_path)
