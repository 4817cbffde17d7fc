import json

import pytest

from sparse_qk.kernels.patterns import PatternType
from sparse_qk.tools.tile_bench import TileBenchConfig, TileBenchRunner, main


def test_tile_bench_small_run_matches_dense():
    config = TileBenchConfig(iterations=2, seed=123)
    result = TileBenchRunner(config).run()

    assert result.ok
    assert result.dense.exposed_cells == 64
    by_name = {p.pattern: p for p in result.patterns}
    assert by_name["grid"].exposed_cells == 4
    assert by_name["k_boundary"].exposed_cells == 32
    for timing in result.patterns:
        assert timing.mismatches == 0
        assert timing.median_ms >= 0.0


def test_tile_bench_accepts_pattern_names():
    config = TileBenchConfig(iterations=1, patterns=("vertical_slash",))
    runner = TileBenchRunner(config)
    assert runner.config.patterns == (PatternType.VERTICAL_SLASH,)


@pytest.mark.parametrize(
    "overrides,match",
    [
        ({"iterations": 0}, "iterations"),
        ({"value_range": 200}, "value_range"),
        ({"patterns": ()}, "pattern"),
    ],
)
def test_tile_bench_config_validation(overrides, match):
    with pytest.raises(ValueError, match=match):
        TileBenchRunner(TileBenchConfig(**overrides))


def test_cli_writes_report(tmp_path):
    report = tmp_path / "bench.json"
    code = main(["--iterations", "1", "--pattern", "grid", "--pattern", "a_shape", "--save-report", str(report)])
    assert code == 0
    payload = json.loads(report.read_text(encoding="utf-8"))
    assert payload["ok"] is True
    assert [p["pattern"] for p in payload["patterns"]] == ["grid", "a_shape"]


@pytest.mark.parametrize("data_width,value_range,ok", [(8, 127, True), (8, 128, False), (4, 7, True), (4, 8, False)])
def test_value_range_boundary_is_the_signed_maximum(data_width, value_range, ok):
    config = TileBenchConfig(data_width=data_width, value_range=value_range)
    if ok:
        config.validate()
    else:
        with pytest.raises(ValueError, match="value_range"):
            config.validate()
