import io

import pytest

from errors import ForbiddenError, NotFoundError, ValidationError
from storage import ReceiptStorage, read_capped, sanitize_receipt_name

PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 64


def test_sanitize_receipt_name() -> None:
    assert sanitize_receipt_name("My Receipt (March).png") == "My-Receipt-March"
    assert sanitize_receipt_name("---.pdf") == "receipt"
    assert len(sanitize_receipt_name("x" * 80 + ".jpg")) == 30


def test_save_and_read_back(tmp_path) -> None:
    storage = ReceiptStorage(7, root=tmp_path)

    info = storage.save("lunch receipt.png", "image/png", PNG)

    public_id = info["publicId"]
    assert public_id.startswith("7/receipts/")
    assert "lunch-receipt" in public_id
    assert info["format"] == "png"
    assert info["size"] == len(PNG)
    assert info["originalName"] == "lunch receipt.png"
    assert info["url"] == f"/api/upload/receipt/{public_id}/file"

    assert storage.info(public_id)["mimetype"] == "image/png"
    chunks, media_type = storage.open(public_id)
    assert media_type == "image/png"
    assert b"".join(chunks) == PNG

    assert storage.stats() == {
        "totalFiles": 1,
        "totalSize": len(PNG),
        "totalSizeMB": 0.0,
        "formats": {"png": 1},
    }


def test_rejects_bad_uploads(tmp_path) -> None:
    storage = ReceiptStorage(7, root=tmp_path, max_bytes=10)

    with pytest.raises(ValidationError, match="Invalid file type"):
        storage.save("notes.txt", "text/plain", b"hello")
    with pytest.raises(ValidationError, match="No file uploaded"):
        storage.save("empty.png", "image/png", b"")
    with pytest.raises(ValidationError, match="File too large"):
        storage.save("big.png", "image/png", PNG)


def test_other_users_files_are_off_limits(tmp_path) -> None:
    owner = ReceiptStorage(7, root=tmp_path)
    public_id = owner.save("receipt.pdf", "application/pdf", b"%PDF-1.4")["publicId"]

    intruder = ReceiptStorage(8, root=tmp_path)
    with pytest.raises(ForbiddenError):
        intruder.info(public_id)
    with pytest.raises(ForbiddenError):
        intruder.delete(public_id)
    with pytest.raises(ForbiddenError, match="Unauthorized to delete some files"):
        intruder.bulk_delete([public_id])
    with pytest.raises(ValidationError, match="Invalid receipt id"):
        intruder.info("8/receipts/../../7/receipts/x")


def test_delete_and_bulk_delete(tmp_path) -> None:
    storage = ReceiptStorage(7, root=tmp_path)
    first = storage.save("a.png", "image/png", PNG)["publicId"]
    second = storage.save("b.jpg", "image/jpeg", b"\xff\xd8\xff")["publicId"]

    storage.delete(first)
    with pytest.raises(NotFoundError, match="File not found"):
        storage.info(first)

    result = storage.bulk_delete([first, second])
    assert result == {"deleted": [second], "notFound": [first]}
    assert storage.stats()["totalFiles"] == 0


class CountingStream(io.BytesIO):
    def __init__(self, data: bytes) -> None:
        super().__init__(data)
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = super().read(size)
        self.bytes_read += len(chunk)
        return chunk


def test_oversized_upload_stops_reading_at_the_cap(tmp_path) -> None:
    storage = ReceiptStorage(7, root=tmp_path, max_bytes=10)
    stream = CountingStream(b"\x89PNG" + b"0" * 5000)

    with pytest.raises(ValidationError, match="File too large"):
        storage.save_upload("big.png", "image/png", stream)

    assert stream.bytes_read == 11
    assert storage.stats()["totalFiles"] == 0


def test_declared_size_over_cap_is_rejected_before_reading(tmp_path) -> None:
    stream = CountingStream(PNG)

    with pytest.raises(ValidationError, match="File too large"):
        read_capped(stream, 10, declared_size=len(PNG))

    assert stream.bytes_read == 0


def test_bad_type_is_rejected_before_reading(tmp_path) -> None:
    storage = ReceiptStorage(7, root=tmp_path)
    stream = CountingStream(b"hello")

    with pytest.raises(ValidationError, match="Invalid file type"):
        storage.save_upload("notes.txt", "text/plain", stream)

    assert stream.bytes_read == 0


def test_save_upload_within_cap(tmp_path) -> None:
    storage = ReceiptStorage(7, root=tmp_path)

    info = storage.save_upload("lunch.png", "image/png", CountingStream(PNG), declared_size=len(PNG))

    assert info["size"] == len(PNG)
    assert info["createdAt"].endswith("+00:00")
