import io

import pytest
from PIL import Image

from campuslink.exceptions import InvalidImage
from campuslink.storage import LocalObjectStorage, attachment_key, prepare_avatar


@pytest.mark.asyncio
async def test_local_upload_writes_file(tmp_path):
    storage = LocalObjectStorage(root=str(tmp_path))
    key = attachment_key(3, 'Report.PDF')

    url = await storage.upload_object(key, b'%PDF-1.7', 'application/pdf')

    assert key.startswith('messages/3/') and key.endswith('.pdf')
    assert url == f'/media/{key}'
    assert (tmp_path / key).read_bytes() == b'%PDF-1.7'


@pytest.mark.asyncio
async def test_local_upload_refuses_keys_outside_root(tmp_path):
    storage = LocalObjectStorage(root=str(tmp_path / 'media'))

    with pytest.raises(ValueError):
        await storage.upload_object('../escape.txt', b'x', 'text/plain')
    assert not (tmp_path / 'escape.txt').exists()


def test_prepare_avatar_shrinks_to_jpeg():
    buf = io.BytesIO()
    Image.new('RGBA', (2048, 512), (10, 20, 30, 255)).save(buf, format='PNG')

    out = prepare_avatar('me.png', buf.getvalue())

    with Image.open(io.BytesIO(out)) as img:
        assert img.format == 'JPEG'
        assert img.size == (1024, 256)


def test_prepare_avatar_rejects_bad_input():
    with pytest.raises(InvalidImage):
        prepare_avatar('me.gif', b'GIF89a')
    with pytest.raises(InvalidImage):
        prepare_avatar('me.png', b'not an image')
