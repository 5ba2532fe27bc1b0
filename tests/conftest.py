import logging

import pytest

import mirror_sync


@pytest.fixture(autouse=True)
def reset_logger():
    """Detach handlers setup_logger() installed so every test starts clean."""
    yield
    logger = logging.getLogger(mirror_sync.LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


@pytest.fixture
def source(tmp_path):
    p = tmp_path / "source"
    p.mkdir()
    return p


@pytest.fixture
def replica(tmp_path):
    p = tmp_path / "replica"
    p.mkdir()
    return p


def write(root, rel, data="content"):
    """Create root/rel (and its parents) holding `data`."""
    path = root.joinpath(*rel.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, bytes):
        path.write_bytes(data)
    else:
        path.write_text(data, encoding="utf-8")
    return path


def tree(root):
    """{relative posix path: bytes} for files, {path/: None} for directories."""
    out = {}
    for p in sorted(root.rglob("*")):
        rel = p.relative_to(root).as_posix()
        if p.is_dir():
            out[rel + "/"] = None
        else:
            out[rel] = p.read_bytes()
    return out
