import pytest

from ntfsreader.Device import BufferDevice

from ntfs_image import sample_volume


@pytest.fixture
def volume():
    return sample_volume()


@pytest.fixture
def image(volume):
    return volume.build()


@pytest.fixture
def device(image):
    return BufferDevice(image)
