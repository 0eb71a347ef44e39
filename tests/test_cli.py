import cv2
import pytest
from PIL import Image as PILImage

from panostitch.main import build_parser, load_config, main


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("PANOSTITCH_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def input_dir(tmp_path, views):
    directory = tmp_path / "input"
    directory.mkdir()
    for k, view in enumerate(views):
        cv2.imwrite(str(directory / f"view_{k}.png"), cv2.cvtColor(view, cv2.COLOR_RGB2BGR))
    (directory / "notes.txt").write_text("not an image")
    return directory


def test_stitches_directory_to_png(input_dir, tmp_path):
    output = tmp_path / "out" / "pano.png"
    assert main(["--input", str(input_dir), "--output", str(output), "--seed", "3"]) == 0
    assert output.exists()
    with PILImage.open(output) as image:
        assert image.mode == "RGBA"
        assert abs(image.size[0] - 800) <= 4


def test_jpeg_output_drops_alpha(input_dir, tmp_path):
    output = tmp_path / "pano.jpg"
    assert main(["--input", str(input_dir), "--output", str(output), "--quality", "medium"]) == 0
    with PILImage.open(output) as image:
        assert image.mode == "RGB"


def test_single_image_exits_with_failure(input_dir, tmp_path):
    for path in sorted(input_dir.glob("view_*.png"))[1:]:
        path.unlink()
    output = tmp_path / "pano.png"
    assert main(["--input", str(input_dir), "--output", str(output)]) == 1
    assert not output.exists()


def test_missing_or_empty_input(tmp_path):
    assert main(["--input", str(tmp_path / "nope"), "--output", str(tmp_path / "o.png")]) == 2
    empty = tmp_path / "empty"
    empty.mkdir()
    assert main(["--input", str(empty), "--output", str(tmp_path / "o.png")]) == 1


def test_required_arguments():
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2


def test_bad_config_file_is_usage_error(input_dir, tmp_path):
    config = tmp_path / "bad.yaml"
    config.write_text("blend_method: poisson\n")
    with pytest.raises(SystemExit) as excinfo:
        main(["--input", str(input_dir), "--output", str(tmp_path / "o.png"), "--config", str(config)])
    assert excinfo.value.code == 2


def test_flags_override_config_file(tmp_path):
    config = tmp_path / "stitch.yaml"
    config.write_text("blend_method: multiband\nseed: 4\nmodelPath: a.onnx\n")
    args = build_parser().parse_args([
        "--input", "in", "--output", "out.png", "--config", str(config),
        "--blend", "none", "--refine", "--model", "b.onnx", "--warp", "apap",
    ])
    loaded = load_config(args)
    assert loaded.blend_method == "none"
    assert loaded.seed == 4
    assert loaded.enable_neural_refinement
    assert loaded.model_path == "b.onnx"
    assert loaded.warp_model == "apap"
