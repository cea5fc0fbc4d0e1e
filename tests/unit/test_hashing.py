from docindex.core.hashing import compute_bytes_digest


def test_compute_bytes_digest_md5() -> None:
    assert compute_bytes_digest(b"docindex") == "fc201e001d0928a6b6031225ecad0d4c"


def test_compute_bytes_digest_other_algorithm() -> None:
    assert len(compute_bytes_digest(b"docindex", alg="sha256")) == 64
