import json
import logging

import numpy as np
import pandas as pd
import pytest

from astrolab.cli import build_parser, main
from astrolab.io import load_frame, save_frame

from conftest import make_frame


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def fits_series(tmp_path, reference_frame, translated_frame):
    ref = save_frame(tmp_path / "f0.fits", reference_frame)
    mov = save_frame(tmp_path / "f1.fits", translated_frame)
    return [ref, mov]


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_sources_csv(tmp_path, fits_series, stars):
    out = tmp_path / "sources.csv"
    assert main(["sources", str(fits_series[0]), "--nsigma", "20", "--limit", "5", "--csv", str(out)]) == 0
    table = pd.read_csv(out)
    assert list(table.columns) == ["rank", "x", "y", "value"]
    assert 1 <= len(table) <= 5
    x, y, _ = stars[np.argmax(stars[:, 2])]
    assert (x, y) in set(zip(table["x"], table["y"]))


def test_sources_print(fits_series, capsys):
    assert main(["sources", str(fits_series[0]), "--nsigma", "20", "--limit", "3"]) == 0
    assert "rank" in capsys.readouterr().out


def test_sources_with_dark(tmp_path, fits_series):
    dark = np.full((512, 512), 2.0, dtype=np.float32)
    dark_path = tmp_path / "dark.fits"
    save_frame(dark_path, make_frame(dark, EXPTIME=30.0))
    out = tmp_path / "sources.csv"
    assert main(["sources", str(fits_series[0]), "--dark", str(dark_path), "--nsigma", "20", "--csv", str(out)]) == 0
    assert len(pd.read_csv(out)) >= 1


def test_align_writes_frames_and_report(tmp_path, fits_series):
    out_dir = tmp_path / "aligned"
    log_file = tmp_path / "logs" / "run.log"
    assert main(["--log-file", str(log_file), "align", *map(str, fits_series), "-o", str(out_dir)]) == 0

    first = load_frame(out_dir / "aligned_000.fits")
    second = load_frame(out_dir / "aligned_001.fits")
    assert first.footprint is None
    assert second.footprint is not None
    assert second.shape == first.shape
    assert second.header["OBJECT"] == "moving"

    report = json.loads((out_dir / "alignment_report.json").read_text())
    assert report["n_frames"] == 2
    assert report["summary"]["success_ratio"] == 1.0
    assert report["settings"]["pipeline"]["on_error"] == "raise"
    assert log_file.exists()


def test_photometry_differential(tmp_path, fits_series, stars):
    order = np.argsort(stars[:, 2])[::-1]
    (tx, ty, _), (cx, cy, _) = stars[order[0]], stars[order[1]]
    out = tmp_path / "curve.csv"
    args = [
        "photometry", *map(str, fits_series),
        "--x", str(tx), "--y", str(ty),
        "--comparison", str(cx), str(cy),
        "--radius", "6", "--align", "--csv", str(out),
    ]
    assert main(args) == 0
    df = pd.read_csv(out)
    assert len(df) == 2
    assert {"flux_0", "flux_1", "ratio", "relative_mag", "jd"} <= set(df.columns)
    assert df["ratio"].iloc[1] == pytest.approx(df["ratio"].iloc[0], rel=0.05)


def test_config_file(tmp_path, fits_series):
    config = tmp_path / "settings.json"
    config.write_text(json.dumps({"photometry": {"aperture_radius": 4}}))
    out = tmp_path / "curve.csv"
    assert main(["--config", str(config), "photometry", str(fits_series[0]), "--x", "100", "--y", "100", "--csv", str(out)]) == 0
    assert len(pd.read_csv(out)) == 1


def test_missing_file_exits_nonzero(tmp_path):
    assert main(["sources", str(tmp_path / "nope.fits")]) == 1
