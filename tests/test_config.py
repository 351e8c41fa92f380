import pytest
from pydantic import ValidationError

from fiscal_intake.config import Settings


def test_default_settings_live_under_root(tmp_path):
    settings = Settings.default(tmp_path)

    assert settings.paths.store_file == (tmp_path / "store.json").resolve()
    assert settings.validation.total_tolerance == 0.01
    assert settings.validation.ncm_placeholder == "00000000"
    assert tuple(settings.validation.outbound_cfop_range) == (5100, 5999)
    assert settings.ofx.max_bytes == 5 * 1024 * 1024
    assert settings.posting.purchase_nature_code == "4.01"


def test_load_reads_yaml_and_creates_folders(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        f"""
paths:
  store_file: {tmp_path / 'dados' / 'store.json'}
  export_folder: {tmp_path / 'exports'}
  log_folder: {tmp_path / 'logs'}
linking:
  suggestion_limit: 5
ofx:
  max_bytes: 1024
""",
        encoding="utf-8",
    )
    settings = Settings.load(config)

    assert settings.linking.suggestion_limit == 5
    assert settings.ofx.max_bytes == 1024
    assert (tmp_path / "dados").is_dir()
    assert (tmp_path / "exports").is_dir()


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Settings.load(tmp_path / "nao-existe.yaml")


@pytest.mark.parametrize(
    "section, values",
    [
        ("validation", {"total_tolerance": -1}),
        ("validation", {"ncm_placeholder": "123"}),
        ("linking", {"min_coverage": 1.5}),
        ("ofx", {"max_bytes": 0}),
    ],
)
def test_invalid_values_are_rejected(section, values):
    with pytest.raises(ValidationError):
        Settings.model_validate({section: values})
