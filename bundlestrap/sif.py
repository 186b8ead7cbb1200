"""Just enough of the SIF container format to unpack one.

A SIF file starts with a 128 byte global header, followed by a table of
fixed size descriptors, followed by the data objects the descriptors
point at. All integers are little endian and structures are packed.
"""

from collections import namedtuple
import logging
import os
import struct

from bundlestrap import exceptions


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


SIF_MAGIC = b'SIF_MAGIC'
HEADER_FORMAT = '<32s10s3s3s16sqqqqqqqq'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
DESCRIPTOR_FORMAT = '<i?IIIqqqqqqq128s384s'
DESCRIPTOR_SIZE = struct.calcsize(DESCRIPTOR_FORMAT)
PARTITION_FORMAT = '<ii3s'
SIGNATURE_FORMAT = '<i256s'
GROUP_MASK = 0xf0000000
FINGERPRINT_SIZE = 20

DATA_DEFFILE = 0x4001
DATA_ENVVAR = 0x4002
DATA_LABELS = 0x4003
DATA_PARTITION = 0x4004
DATA_SIGNATURE = 0x4005
DATA_GENERIC_JSON = 0x4006
DATA_GENERIC = 0x4007
DATA_CRYPTO_MESSAGE = 0x4008
DATA_SBOM = 0x4009
DATA_OCI_ROOT_INDEX = 0x400a
DATA_OCI_BLOB = 0x400b

FS_SQUASH = 1
FS_EXT3 = 2
FS_IMMUTABLE_OBJECTS = 3
FS_RAW = 4
FS_ENCRYPTED_SQUASH = 5

PART_SYSTEM = 1
PART_PRIMARY_SYSTEM = 2
PART_DATA = 3
PART_OVERLAY = 4

OCI_CONFIG_NAME = 'oci-config.json'

SQUASHFS_MAGIC = b'hsqs'
EXT_MAGIC_OFFSET = 1080
EXT_MAGIC = b'\x53\xef'

IMAGE_SIF = 'sif'
IMAGE_SQUASHFS = 'squashfs'
IMAGE_EXT3 = 'ext3'
IMAGE_SANDBOX = 'sandbox'


Descriptor = namedtuple(
    'Descriptor',
    ['data_type', 'id', 'group_id', 'linked_id', 'offset', 'size', 'name',
     'extra'])
Partition = namedtuple('Partition', ['descriptor', 'fs_type', 'part_type',
                                     'arch'])
Signature = namedtuple('Signature', ['descriptor', 'hash_type',
                                     'fingerprint'])


class SIFFormatError(exceptions.ExtractionFailedError):
    pass


def image_type(path):
    """Work out what kind of local image path is."""
    if os.path.isdir(path):
        return IMAGE_SANDBOX

    with open(path, 'rb') as f:
        head = f.read(HEADER_SIZE)
        if head[32:32 + len(SIF_MAGIC)] == SIF_MAGIC:
            return IMAGE_SIF
        if head[:4] == SQUASHFS_MAGIC:
            return IMAGE_SQUASHFS
        f.seek(EXT_MAGIC_OFFSET)
        if f.read(2) == EXT_MAGIC:
            return IMAGE_EXT3

    raise exceptions.ExtractionFailedError(
        '%s is not a SIF, squashfs, ext3 or sandbox image' % path)


class SIFImage(object):
    def __init__(self, path):
        self.path = path
        self.descriptors = []
        self._load()

    def _load(self):
        with open(self.path, 'rb') as f:
            head = f.read(HEADER_SIZE)
            if len(head) != HEADER_SIZE:
                raise SIFFormatError('%s is too short to be a SIF' % self.path)
            (_, magic, version, arch, _, _, _, _, total, offset, size,
             _, _) = struct.unpack(HEADER_FORMAT, head)
            if not magic.startswith(SIF_MAGIC):
                raise SIFFormatError('%s is not a SIF file' % self.path)
            self.version = version.rstrip(b'\0').decode('ascii', 'replace')
            self.arch = arch.rstrip(b'\0').decode('ascii', 'replace')

            f.seek(offset)
            table = f.read(size)

        for i in range(total):
            raw = table[i * DESCRIPTOR_SIZE:(i + 1) * DESCRIPTOR_SIZE]
            if len(raw) != DESCRIPTOR_SIZE:
                raise SIFFormatError('%s has a truncated descriptor table'
                                     % self.path)
            (data_type, used, ident, group_id, linked_id, d_offset, d_size,
             _, _, _, _, _, name, extra) = struct.unpack(
                DESCRIPTOR_FORMAT, raw)
            if not used:
                continue
            self.descriptors.append(Descriptor(
                data_type, ident, group_id & ~GROUP_MASK, linked_id,
                d_offset, d_size,
                name.rstrip(b'\0').decode('utf-8', 'replace'), extra))

        LOG.debug('SIF %s has %d descriptors'
                  % (self.path, len(self.descriptors)))

    def partitions(self):
        parts = []
        for d in self.descriptors:
            if d.data_type != DATA_PARTITION:
                continue
            fs_type, part_type, arch = struct.unpack_from(
                PARTITION_FORMAT, d.extra)
            parts.append(Partition(d, fs_type, part_type,
                                   arch.rstrip(b'\0').decode('ascii',
                                                             'replace')))
        return parts

    def primary_partition(self):
        for p in self.partitions():
            if p.part_type == PART_PRIMARY_SYSTEM:
                return p
        raise SIFFormatError('%s has no primary system partition'
                             % self.path)

    def signatures(self):
        sigs = []
        for d in self.descriptors:
            if d.data_type != DATA_SIGNATURE:
                continue
            hash_type, entity = struct.unpack_from(SIGNATURE_FORMAT, d.extra)
            fingerprint = entity[:FINGERPRINT_SIZE].hex().upper()
            sigs.append(Signature(d, hash_type, fingerprint))
        return sigs

    def read(self, descriptor):
        with open(self.path, 'rb') as f:
            f.seek(descriptor.offset)
            return f.read(descriptor.size)

    def oci_config(self):
        for d in self.descriptors:
            if d.data_type == DATA_GENERIC_JSON and d.name == OCI_CONFIG_NAME:
                return self.read(d)
        return None
