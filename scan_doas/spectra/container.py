"""Reader and writer for binary scan containers (``.pak`` files).

A scan container is a plain concatenation of records.  Every record starts with a fixed size
little-endian header followed by the sample payload::

    magic            4s   b"SPAK"
    header_size      H
    version          H
    checksum         I    CRC32 of the uncompressed sample bytes
    payload_size     I    number of payload bytes following the header
    flags            B    bit 0: payload is zlib compressed
    name             12s  label of the spectrum ("sky", "dark", "offset", ...)
    device           16s  serial number of the spectrometer
    channel          B
    interlace_step   B
    start_channel    H
    num_samples      H
    num_spectra      I    number of co-added exposures
    exposure_time    I    milliseconds
    start_time       d    seconds since the epoch
    stop_time        d
    scan_angle       f

The samples are stored as little-endian float64 values.  Each record is checked and decoded
independently, so a damaged record only affects its own position in the scan.
"""

from __future__ import annotations

import logging
import pathlib
import struct
import zlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

import numpy as np

from ..errors import ReadErrorCode, ScanFileError, SpectrumReadError
from .spectrum import SpectrumInfo, SpectrumRecord, SpectrumRole

logger = logging.getLogger(__name__)

MAGIC = b"SPAK"
VERSION = 1
FLAG_COMPRESSED = 0x01
HEADER = struct.Struct("<4sHHIIB12s16sBBHHIIddf")
HEADER_SIZE = HEADER.size

# Containers with fewer spectra than this are decoded into memory up front.
IN_MEMORY_LIMIT = 200
NOT_INITIALIZED = -1

_LABELS: Dict[str, SpectrumRole] = {
    "sky": SpectrumRole.SKY,
    "zenith": SpectrumRole.SKY,
    "dark": SpectrumRole.DARK,
    "offset": SpectrumRole.OFFSET,
    "dark_cur": SpectrumRole.DARK_CURRENT,
    "darkcur": SpectrumRole.DARK_CURRENT,
}

PathLike = Union[str, pathlib.Path]


def _pack_text(text: str, size: int) -> bytes:
    return text.encode("ascii", errors="replace")[:size].ljust(size, b"\0")


def _unpack_text(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("ascii", errors="replace").strip()


def encode_record(record: SpectrumRecord, compress: bool = True) -> bytes:
    """Serialize ``record`` into the container record layout."""

    info = record.info
    raw = np.ascontiguousarray(record.numpy(), dtype="<f8").tobytes()
    payload = zlib.compress(raw) if compress else raw
    header = HEADER.pack(
        MAGIC,
        HEADER_SIZE,
        VERSION,
        zlib.crc32(raw) & 0xFFFFFFFF,
        len(payload),
        FLAG_COMPRESSED if compress else 0,
        _pack_text(info.name, 12),
        _pack_text(info.device, 16),
        int(info.channel) & 0xFF,
        int(info.interlace_step) & 0xFF,
        int(info.start_channel),
        record.length,
        int(info.num_spectra),
        int(round(info.exposure_time)),
        float(info.start_time),
        float(info.stop_time),
        float(info.scan_angle),
    )
    return header + payload


def write_scan_file(path: PathLike, records: Iterable[SpectrumRecord], compress: bool = True) -> pathlib.Path:
    """Write ``records`` as a scan container to ``path``."""

    path = pathlib.Path(path)
    with path.open("wb") as handle:
        for record in records:
            handle.write(encode_record(record, compress=compress))
    return path


@dataclass
class _IndexEntry:
    position: int
    offset: int
    fields: Optional[tuple] = None
    error: Optional[ReadErrorCode] = None

    @property
    def name(self) -> str:
        return _unpack_text(self.fields[6]) if self.fields is not None else ""


def _decode(entry: _IndexEntry, payload: bytes, role: SpectrumRole) -> SpectrumRecord:
    if entry.error is not None:
        raise SpectrumReadError(entry.error, entry.position)
    (_, _, _, checksum, payload_size, flags, name, device, channel, interlace_step,
     start_channel, num_samples, num_spectra, exposure_time, start_time, stop_time,
     scan_angle) = entry.fields
    if len(payload) != payload_size:
        raise SpectrumReadError(ReadErrorCode.MALFORMED, entry.position, "truncated payload")
    if flags & FLAG_COMPRESSED:
        try:
            raw = zlib.decompress(payload)
        except zlib.error as exc:
            raise SpectrumReadError(ReadErrorCode.DECOMPRESSION_ERROR, entry.position, str(exc)) from exc
    else:
        raw = payload
    if len(raw) != num_samples * 8:
        raise SpectrumReadError(
            ReadErrorCode.MALFORMED,
            entry.position,
            f"expected {num_samples} samples, found {len(raw) // 8}",
        )
    if zlib.crc32(raw) & 0xFFFFFFFF != checksum:
        raise SpectrumReadError(ReadErrorCode.CHECKSUM_MISMATCH, entry.position)
    info = SpectrumInfo(
        scan_index=entry.position,
        name=_unpack_text(name),
        role=role,
        num_spectra=int(num_spectra),
        exposure_time=float(exposure_time),
        channel=int(channel),
        interlace_step=max(int(interlace_step), 1),
        start_channel=int(start_channel),
        device=_unpack_text(device),
        start_time=float(start_time),
        stop_time=float(stop_time),
        scan_angle=float(scan_angle),
    )
    return SpectrumRecord(np.frombuffer(raw, dtype="<f8").copy(), info)


class ScanContainerReader:
    """Sequential and random access to the spectra of one scan container.

    Call :meth:`check_scan_file` first: it indexes the records, classifies them by their labels
    and reads the sky, dark, offset and dark-current spectra.  Records that are neither of
    these are measurement spectra, returned one by one by :meth:`next_spectrum`.  A reader is
    owned by a single scan evaluation and is not safe for concurrent use.
    """

    def __init__(self, path: PathLike) -> None:
        self.path = pathlib.Path(path)
        self._entries: List[_IndexEntry] = []
        self._roles: Dict[int, SpectrumRole] = {}
        self._buffer: Optional[List[Union[SpectrumRecord, SpectrumReadError]]] = None
        self._cursor = 0
        self._initialized = False
        self._sky: Optional[SpectrumRecord] = None
        self._dark: Optional[SpectrumRecord] = None
        self._offset: Optional[SpectrumRecord] = None
        self._dark_current: Optional[SpectrumRecord] = None
        self.device = ""
        self.channel = 0
        self.start_time = 0.0
        self.stop_time = 0.0
        self.last_position = -1

    # ------------------------------------------------------------------ indexing

    def _index(self) -> None:
        entries: List[_IndexEntry] = []
        size = self.path.stat().st_size
        with self.path.open("rb") as handle:
            offset = 0
            while offset < size:
                handle.seek(offset)
                raw = handle.read(HEADER_SIZE)
                position = len(entries)
                if len(raw) < HEADER_SIZE:
                    entries.append(_IndexEntry(position, offset, error=ReadErrorCode.MALFORMED))
                    break
                fields = HEADER.unpack(raw)
                if fields[0] != MAGIC or fields[1] != HEADER_SIZE:
                    entries.append(_IndexEntry(position, offset, error=ReadErrorCode.MALFORMED))
                    resync = self._find_magic(handle, offset + 1)
                    if resync < 0:
                        break
                    offset = resync
                    continue
                entries.append(_IndexEntry(position, offset, fields))
                offset += HEADER_SIZE + fields[4]
        self._entries = entries

    @staticmethod
    def _find_magic(handle, start: int, chunk_size: int = 1 << 16) -> int:
        handle.seek(start)
        carry = b""
        base = start
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                return -1
            data = carry + chunk
            found = data.find(MAGIC)
            if found >= 0:
                return base - len(carry) + found
            carry = data[-(len(MAGIC) - 1):]
            base += len(chunk)

    def _read_payload(self, entry: _IndexEntry, handle=None) -> bytes:
        if entry.fields is None:
            return b""
        if handle is None:
            with self.path.open("rb") as own:
                own.seek(entry.offset + HEADER_SIZE)
                return own.read(entry.fields[4])
        handle.seek(entry.offset + HEADER_SIZE)
        return handle.read(entry.fields[4])

    def _role(self, position: int) -> SpectrumRole:
        return self._roles.get(position, SpectrumRole.MEASUREMENT)

    def _load(self, position: int) -> SpectrumRecord:
        if position < 0 or position >= len(self._entries):
            raise SpectrumReadError(ReadErrorCode.NOT_FOUND, position)
        if self._buffer is not None:
            item = self._buffer[position]
            if isinstance(item, SpectrumReadError):
                raise item
            return item.copy()
        entry = self._entries[position]
        return _decode(entry, self._read_payload(entry), self._role(position))

    # ------------------------------------------------------------------ classification

    def check_scan_file(self) -> int:
        """Index and classify the container, returns the number of spectra in it.

        Raises:
            ScanFileError: If the sky, dark, offset or dark-current spectrum cannot be read.
        """

        try:
            self._index()
        except OSError as exc:
            raise ScanFileError(f"could not open scan file {self.path}: {exc}") from exc

        first: Dict[SpectrumRole, int] = {}
        label_positions: Dict[str, int] = {}
        for entry in self._entries:
            label = entry.name.lower()
            if label in _LABELS:
                label_positions.setdefault(label, entry.position)
                self._roles[entry.position] = _LABELS[label]

        sky_position = label_positions.get("sky", label_positions.get("zenith", 0))
        dark_position = label_positions.get("dark")
        offset_position = label_positions.get("offset")
        dark_current_position = label_positions.get("dark_cur", label_positions.get("darkcur"))
        if dark_position is None and offset_position is None and dark_current_position is None:
            dark_position = 1
        self._roles[sky_position] = SpectrumRole.SKY
        first[SpectrumRole.SKY] = sky_position
        if dark_position is not None:
            self._roles[dark_position] = SpectrumRole.DARK
            first[SpectrumRole.DARK] = dark_position
        if offset_position is not None:
            first[SpectrumRole.OFFSET] = offset_position
        if dark_current_position is not None:
            first[SpectrumRole.DARK_CURRENT] = dark_current_position

        if len(self._entries) < IN_MEMORY_LIMIT:
            self._buffer = []
            with self.path.open("rb") as handle:
                for entry in self._entries:
                    try:
                        record = _decode(entry, self._read_payload(entry, handle), self._role(entry.position))
                    except SpectrumReadError as exc:
                        logger.warning("Could not read spectrum %d from %s: %s", entry.position, self.path, exc)
                        self._buffer.append(exc)
                    else:
                        self._buffer.append(record)
        else:
            self._buffer = None

        special = {}
        for role, position in first.items():
            try:
                special[role] = self._load(position)
            except SpectrumReadError as exc:
                raise ScanFileError(
                    f"could not read {role.value} spectrum in file {self.path}: {exc}"
                ) from exc
        self._sky = special.get(SpectrumRole.SKY)
        self._dark = special.get(SpectrumRole.DARK)
        self._offset = special.get(SpectrumRole.OFFSET)
        self._dark_current = special.get(SpectrumRole.DARK_CURRENT)

        try:
            head = self._load(0)
        except SpectrumReadError:
            head = self._sky
        self.start_time = head.info.start_time
        self.stop_time = head.info.stop_time
        self.device = head.info.device
        self.channel = head.info.channel

        self._initialized = True
        self.reset_counter()
        return len(self._entries)

    # ------------------------------------------------------------------ access

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def spectrum_count(self) -> int:
        return len(self._entries)

    @property
    def buffered(self) -> bool:
        """True if the spectra were decoded into memory during classification."""

        return self._buffer is not None

    def role_of(self, position: int) -> SpectrumRole:
        return self._role(position)

    def _track_time(self, record: SpectrumRecord) -> None:
        if record.info.stop_time > self.stop_time:
            self.stop_time = record.info.stop_time
        if record.info.start_time < self.start_time:
            self.start_time = record.info.start_time

    def next_spectrum(self) -> SpectrumRecord:
        """Return the next measurement spectrum of the scan.

        The cursor advances on every call, also when the record cannot be decoded.

        Raises:
            SpectrumReadError: With code ``END_OF_DATA`` after the last spectrum, or the decode
                failure of the record at the cursor.
        """

        while self._cursor < len(self._entries):
            position = self._cursor
            self._cursor += 1
            if self._role(position) is not SpectrumRole.MEASUREMENT:
                continue
            self.last_position = position
            record = self._load(position)
            self._track_time(record)
            return record
        raise SpectrumReadError(ReadErrorCode.END_OF_DATA, self._cursor)

    def spectrum_at(self, position: int) -> SpectrumRecord:
        """Return the spectrum at ``position`` of the container, whatever its role."""

        record = self._load(position)
        self._track_time(record)
        return record

    def reset_counter(self) -> None:
        """Move the cursor to the first measurement spectrum."""

        self._cursor = 0
        while self._cursor < len(self._entries) and self._role(self._cursor) is not SpectrumRole.MEASUREMENT:
            self._cursor += 1
        self.last_position = -1

    @property
    def sky(self) -> Optional[SpectrumRecord]:
        return self._sky.copy() if self._sky is not None else None

    @property
    def dark(self) -> Optional[SpectrumRecord]:
        return self._dark.copy() if self._dark is not None else None

    @property
    def offset(self) -> Optional[SpectrumRecord]:
        return self._offset.copy() if self._offset is not None else None

    @property
    def dark_current(self) -> Optional[SpectrumRecord]:
        return self._dark_current.copy() if self._dark_current is not None else None

    @property
    def spectrum_length(self) -> int:
        """Length of the spectra in the scan, ``-1`` before :meth:`check_scan_file`."""

        if not self._initialized:
            return NOT_INITIALIZED
        return self._sky.length

    @property
    def interlace_steps(self) -> int:
        """Interlace step of the spectra in the scan, ``-1`` before :meth:`check_scan_file`."""

        if not self._initialized:
            return NOT_INITIALIZED
        return self._sky.info.interlace_step

    @property
    def start_channel(self) -> int:
        """First detector pixel of the spectra in the scan, ``-1`` before :meth:`check_scan_file`."""

        if not self._initialized:
            return NOT_INITIALIZED
        return self._sky.info.start_channel


def read_container_spectrum(path: PathLike, position: int = 0) -> SpectrumRecord:
    """Read a single spectrum from a scan container without classifying it."""

    reader = ScanContainerReader(path)
    try:
        reader._index()
    except OSError as exc:
        raise SpectrumReadError(ReadErrorCode.NOT_FOUND, position, str(exc)) from exc
    return reader._load(position)


__all__ = [
    "HEADER_SIZE",
    "IN_MEMORY_LIMIT",
    "NOT_INITIALIZED",
    "ScanContainerReader",
    "encode_record",
    "write_scan_file",
    "read_container_spectrum",
]
