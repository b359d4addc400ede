import logging

from logs import LOG_FORMAT, LineRotatingFileHandler


def test_rotates_after_max_lines(tmp_path):
    handler = LineRotatingFileHandler(str(tmp_path), max_lines=3)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    log = logging.getLogger("poppy.test_rotation")
    log.propagate = False
    log.setLevel(logging.INFO)
    log.addHandler(handler)

    try:
        for i in range(4):
            log.info(f"line {i}")
    finally:
        log.removeHandler(handler)
        handler.close()

    rotated = [p for p in tmp_path.iterdir() if p.name != "latest.log"]
    assert len(rotated) == 1
    assert rotated[0].read_text().count("\n") == 3
    assert "line 3" in (tmp_path / "latest.log").read_text()


def test_counts_existing_lines(tmp_path):
    (tmp_path / "latest.log").write_text("a\nb\n")
    handler = LineRotatingFileHandler(str(tmp_path), max_lines=10)
    try:
        assert handler.line_count == 2
    finally:
        handler.close()
