from pathlib import Path
from unittest.mock import patch

import numpy as np
from PIL import Image

from url_detector.cli import build_parser, main


def _png(tmp_path: Path) -> Path:
    path = tmp_path / "frame.png"
    Image.fromarray(np.arange(12, dtype=np.uint8).reshape(3, 4)).save(path)
    return path


def test_build_parser_defaults() -> None:
    args = build_parser().parse_args([])

    assert args.url == ""
    assert args.mode == "single"
    assert args.num_images == 1
    assert args.period == 0.0
    assert args.timeout == 60.0
    assert args.http is False
    assert args.auth is None
    assert args.http_timeout == 0.0
    assert args.max_buffers == -1
    assert args.port_name == "URL1"
    assert args.show_live is False
    assert args.log_level == "WARNING"


def test_build_parser_accepts_auth_schemes() -> None:
    args = build_parser().parse_args(["--http", "--auth", "digest_ie", "--no-verify-host"])

    assert args.auth == "digest_ie"
    assert args.no_verify_host is True


def test_main_single_smoke(tmp_path: Path, capsys) -> None:
    path = _png(tmp_path)

    with patch("sys.argv", ["url-detector", "--url", str(path)]):
        assert main() == 0

    out = capsys.readouterr().out
    assert "frames=1" in out
    assert "size=4x3" in out
    assert "type=UInt8 color=Mono" in out


def test_main_multiple_saves_frames(tmp_path: Path) -> None:
    path = _png(tmp_path)
    out_dir = tmp_path / "frames"

    with patch(
        "sys.argv",
        [
            "url-detector",
            "--url",
            path.as_uri(),
            "--mode",
            "multiple",
            "--num-images",
            "3",
            "--save-dir",
            str(out_dir),
        ],
    ):
        assert main() == 0

    saved = sorted(p.name for p in out_dir.glob("*.npy"))
    assert saved == ["frame_000001.npy", "frame_000002.npy", "frame_000003.npy"]
    assert np.load(out_dir / "frame_000002.npy")[2, 3] == 11


def test_main_continuous_stops_after_duration(tmp_path: Path, capsys) -> None:
    path = _png(tmp_path)

    with patch(
        "sys.argv",
        ["url-detector", "--url", str(path), "--mode", "continuous", "--period", "0.01", "--duration", "0.1"],
    ):
        assert main() == 0

    assert "mode=continuous" in capsys.readouterr().out


def test_main_fetch_failure_returns_1(tmp_path: Path, capsys) -> None:
    with patch("sys.argv", ["url-detector", "--url", str(tmp_path / "missing.png")]):
        assert main() == 1

    captured = capsys.readouterr()
    assert "frames=0" in captured.out
    assert "Error: cannot read" in captured.err


def test_main_declined_setting_returns_2(tmp_path: Path, capsys) -> None:
    with patch("sys.argv", ["url-detector", "--url", str(_png(tmp_path)), "--num-images", "0"]):
        assert main() == 2

    assert "NUM_IMAGES" in capsys.readouterr().err


def test_main_warns_about_http_options_without_http(tmp_path: Path, capsys) -> None:
    with patch("sys.argv", ["url-detector", "--url", str(_png(tmp_path)), "--username", "operator"]):
        assert main() == 0

    assert "Warning: HTTP options only apply with --http" in capsys.readouterr().err


def test_main_report_prints_details(tmp_path: Path, capsys) -> None:
    with patch("sys.argv", ["url-detector", "--url", str(_png(tmp_path)), "--report", "--port-name", "CAM2"]):
        assert main() == 0

    out = capsys.readouterr().out
    assert "URL Driver CAM2" in out
    assert "Model:             Pillow" in out
