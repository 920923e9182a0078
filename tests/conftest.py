from datetime import date, timedelta
from pathlib import Path
import pytest

@pytest.fixture(scope="session")
def project_root() -> Path:
    return Path(__file__).resolve().parents[1]

@pytest.fixture(scope="session")
def cfg_path(project_root: Path) -> Path:
    # default location we agreed on
    return project_root / "config" / "config.toml"

@pytest.fixture(scope="session")
def cfg(cfg_path: Path):
    from playbook_engine.config_model.model import load_config
    return load_config(str(cfg_path))

@pytest.fixture
def tmp_out(tmp_path: Path) -> Path:
    d = tmp_path / "out"
    d.mkdir(parents=True, exist_ok=True)
    return d

@pytest.fixture(autouse=True)
def _fresh_dictionary_cache():
    # the dictionary cache is process-wide; each test starts from the bundled file
    from playbook_engine.nlp.normalize import reset_dictionary_cache
    reset_dictionary_cache()
    yield
    reset_dictionary_cache()

@pytest.fixture(scope="session")
def registry():
    from playbook_engine.playbooks.registry import PlaybookRegistry
    return PlaybookRegistry()

@pytest.fixture
def dictionary():
    from playbook_engine.nlp.normalize import dictionary_cache
    return dictionary_cache().get()

CATEGORIES = ("Eletrônicos", "Moda", "Casa")

@pytest.fixture
def sales_rows():
    """50 sales rows: non-integer values, ISO dates, three categories."""
    start = date(2024, 1, 1)
    return [
        {
            "valor": round(10.37 + i * 3.5, 2),
            "data": (start + timedelta(days=i)).isoformat(),
            "categoria": CATEGORIES[i % 3],
        }
        for i in range(50)
    ]

@pytest.fixture
def sales_schema():
    return [
        {"name": "valor", "type": "numeric"},
        {"name": "data", "type": "date"},
        {"name": "categoria", "type": "text"},
    ]
