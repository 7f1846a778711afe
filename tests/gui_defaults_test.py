from pathlib import Path

GUI_SOURCE = Path(__file__).resolve().parents[1] / "chunk_merger_gui.py"


def test_gui_default_limit_is_20mb():
    source = GUI_SOURCE.read_text(encoding="utf-8")
    assert "self.limit_mb = tk.IntVar(value=20)" in source


def test_gui_defaults_to_bounded_strategy():
    source = GUI_SOURCE.read_text(encoding="utf-8")
    assert 'self.strategy_label = tk.StringVar(value="Keep under the limit")' in source
    assert '"Keep under the limit": "under"' in source
