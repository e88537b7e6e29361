import pytest

from variant_severity.paths import resolve_config_path, resolve_input_paths


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("VARIANT_SEVERITY_COHORT", raising=False)
    monkeypatch.delenv("VARIANT_SEVERITY_CONFIG", raising=False)


def _touch(p):
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text("case_id\n")
    return p


def test_conventional_locations(tmp_path):
    _touch(tmp_path / "data" / "line_list.csv")
    rp = resolve_input_paths(project_root=tmp_path)
    assert rp.cohort_csv == (tmp_path / "data" / "line_list.csv").resolve()
    assert rp.config_json is None

    _touch(tmp_path / "data" / "cohort.csv")
    _touch(tmp_path / "config" / "analysis.json")
    rp = resolve_input_paths(project_root=tmp_path)
    assert rp.cohort_csv.name == "cohort.csv"
    assert rp.config_json == (tmp_path / "config" / "analysis.json").resolve()


def test_explicit_argument_wins(tmp_path, monkeypatch):
    _touch(tmp_path / "data" / "cohort.csv")
    other = _touch(tmp_path / "elsewhere.csv")
    monkeypatch.setenv("VARIANT_SEVERITY_COHORT", str(tmp_path / "data" / "cohort.csv"))
    rp = resolve_input_paths(project_root=tmp_path, cohort_csv=other)
    assert rp.cohort_csv == other.resolve()


def test_environment_variable(tmp_path, monkeypatch):
    env_csv = _touch(tmp_path / "env" / "cases.csv")
    env_cfg = _touch(tmp_path / "env" / "cfg.json")
    monkeypatch.setenv("VARIANT_SEVERITY_COHORT", str(env_csv))
    monkeypatch.setenv("VARIANT_SEVERITY_CONFIG", str(env_cfg))
    rp = resolve_input_paths(project_root=tmp_path)
    assert rp.cohort_csv == env_csv.resolve()
    assert rp.config_json == env_cfg.resolve()


def test_missing_cohort_lists_candidates(tmp_path):
    with pytest.raises(FileNotFoundError, match="line_list.csv"):
        resolve_input_paths(project_root=tmp_path)


def test_missing_config(tmp_path, monkeypatch):
    with pytest.raises(FileNotFoundError, match="Config file not found"):
        resolve_config_path(project_root=tmp_path, config_json=tmp_path / "nope.json")
    monkeypatch.setenv("VARIANT_SEVERITY_CONFIG", str(tmp_path / "gone.json"))
    with pytest.raises(FileNotFoundError, match="VARIANT_SEVERITY_CONFIG"):
        resolve_config_path(project_root=tmp_path)
