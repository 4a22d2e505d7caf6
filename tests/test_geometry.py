import pytest

from ntfsreader.errors import FormatError
from ntfsreader.MFT import VolumeGeometry
from ntfsreader.MFT import mft_record_size

from ntfs_image import make_boot_sector


def test_geometry():
    geometry = VolumeGeometry.from_boot_sector(make_boot_sector())
    assert geometry.bytes_per_sector == 512
    assert geometry.sectors_per_cluster == 8
    assert geometry.bytes_per_cluster == 4096
    assert geometry.total_sectors == 0x800
    assert geometry.total_clusters == 0x100
    assert geometry.mft_lcn == 4
    assert geometry.mft_mirror_lcn == 1
    assert geometry.clusters_per_mft_record == -10
    assert geometry.bytes_per_mft_record == 1024
    assert geometry.bytes_per_index_record == 4096
    assert geometry.volume_serial == 0x1122334455667788
    assert geometry.cluster_offset(4) == 0x4000


def test_negative_record_size():
    # 0xF7 as a signed byte
    geometry = VolumeGeometry.from_boot_sector(make_boot_sector(clusters_per_mft_record=-9))
    assert geometry.bytes_per_mft_record == 512


def test_positive_record_size():
    geometry = VolumeGeometry.from_boot_sector(make_boot_sector(bytes_per_sector=512,
                                                                sectors_per_cluster=8,
                                                                clusters_per_mft_record=2))
    assert geometry.bytes_per_mft_record == 8192


def test_mft_record_size():
    assert mft_record_size(-10, 4096) == 1024
    assert mft_record_size(1, 4096) == 4096


def test_round_to_sector():
    geometry = VolumeGeometry.from_boot_sector(make_boot_sector())
    assert geometry.round_to_sector(1) == 512
    assert geometry.round_to_sector(512) == 512
    assert geometry.round_to_sector(513) == 1024


def test_not_ntfs():
    with pytest.raises(FormatError):
        VolumeGeometry.from_boot_sector(make_boot_sector(oem_id=b"MSDOS5.0"))


def test_truncated():
    with pytest.raises(FormatError):
        VolumeGeometry.from_boot_sector(make_boot_sector()[:0x30])
    with pytest.raises(FormatError):
        VolumeGeometry.from_boot_sector(b"")


def test_zero_sector_size():
    with pytest.raises(FormatError):
        VolumeGeometry.from_boot_sector(make_boot_sector(bytes_per_sector=0))


def test_zero_sectors_per_cluster():
    # records smaller than a cluster do not depend on the cluster size
    geometry = VolumeGeometry.from_boot_sector(make_boot_sector(sectors_per_cluster=0))
    assert geometry.total_clusters == 0
    assert geometry.bytes_per_mft_record == 1024


def test_record_smaller_than_header():
    # 0xFE as a signed byte: 4 byte records
    with pytest.raises(FormatError):
        VolumeGeometry.from_boot_sector(make_boot_sector(clusters_per_mft_record=-2))


def test_record_smaller_than_sector():
    with pytest.raises(FormatError):
        VolumeGeometry.from_boot_sector(make_boot_sector(clusters_per_mft_record=-8))
