"""
ASTERIX Data Item Tables.

Static lookup from (category, field reference number) to a decode rule for the
categories with dedicated support (048, 062, 034, 021), plus the shared helpers
those rules rely on: the 6-bit aircraft identification decoder and the size
estimator used for every item without a known layout.
"""

import base64
import struct
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

# Extension indicator (bit 0) of FSPEC bytes and variable-length items
FX_BIT = 0x01

# Forward scan bound when sizing an unknown extensible item
ESTIMATE_SCAN_LIMIT = 20

AIRCRAFT_ID_CHARS = "?ABCDEFGHIJKLMNOPQRSTUVWXYZ????? ???????????????0123456789??????"

RHO_SCALE = 1.0 / 256.0  # NM per LSB
THETA_SCALE = 360.0 / 65536.0  # degrees per LSB
CAT062_WGS84_SCALE = 180.0 / 2 ** 31
CAT021_WGS84_SCALE = 180.0 / 2 ** 23
CAT021_WGS84_HIGH_RES_SCALE = 180.0 / 2 ** 30
FLIGHT_LEVEL_SCALE = 0.25
ALTITUDE_STEP_FT = 25.0
TIME_OF_DAY_SCALE = 1.0 / 128.0


@dataclass(frozen=True)
class Opaque:
    """An undecoded byte span. Renders as standard base64."""
    data: bytes

    def __str__(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


FieldValue = Union[bool, int, float, str, Dict[str, "FieldValue"], Opaque]


def estimate_field_size(data) -> int:
    """Guesses the length of an item whose layout is unknown.

    Extensible items (FX bit set on the first byte) are sized up to the first
    byte with a clear FX bit. Anything else is assumed to be a 2-byte item, or
    whatever is left when fewer bytes remain.
    """
    if not data:
        return 0

    if data[0] & FX_BIT and len(data) > 1:
        for i, byte in enumerate(data[:ESTIMATE_SCAN_LIMIT]):
            if not byte & FX_BIT:
                return i + 1

    return 2 if len(data) >= 2 else 1


def decode_aircraft_id(data) -> str:
    """Decodes an 8-character callsign packed as 6-bit codes into 6 bytes."""
    if len(data) < 6:
        return ""

    bits = int.from_bytes(bytes(data[:6]), "big")
    chars = [AIRCRAFT_ID_CHARS[(bits >> shift) & 0x3F] for shift in range(42, -1, -6)]
    return "".join(chars).rstrip(" ")


# --- Sizing rules ---
# Each returns the number of bytes the item occupies, or 0 when the remaining
# data cannot hold it.

@dataclass(frozen=True)
class Fixed:
    size: int

    def measure(self, data) -> int:
        return self.size if len(data) >= self.size else 0


@dataclass(frozen=True)
class FXTerminated:
    cap: int

    def measure(self, data) -> int:
        for i, byte in enumerate(data[:self.cap]):
            if not byte & FX_BIT:
                return i + 1
        return 0


@dataclass(frozen=True)
class Estimated:
    def measure(self, data) -> int:
        return estimate_field_size(data)


Sizing = Union[Fixed, FXTerminated, Estimated]


@dataclass(frozen=True)
class FieldRule:
    name: str
    sizing: Sizing
    decode: Callable[..., FieldValue]

    def apply(self, data) -> Tuple[Optional[FieldValue], int]:
        size = self.sizing.measure(data)
        if size == 0:
            return None, 0
        return self.decode(data[:size]), size


# --- Value decoders ---

def _u16(data) -> int:
    return struct.unpack_from(">H", data)[0]


def _u24(data) -> int:
    return int.from_bytes(bytes(data[:3]), "big")


def _opaque(data) -> Opaque:
    return Opaque(bytes(data))


def _octet(data) -> int:
    return data[0]


def _data_source(data) -> FieldValue:
    return {"sac": data[0], "sic": data[1]}


def _polar_position(data) -> FieldValue:
    rho, theta = struct.unpack_from(">HH", data)
    return {"rho_nm": rho * RHO_SCALE, "theta_deg": theta * THETA_SCALE}


def _mode3a(data) -> FieldValue:
    v = _u16(data)
    return {
        "validated": (v & 0x8000) == 0,
        "garbled": (v & 0x4000) != 0,
        "code": "%04o" % (v & 0x0FFF),
    }


def _flight_level(data) -> FieldValue:
    v = _u16(data)
    value = v & 0x3FFF
    if v & 0x2000:
        # 14-bit two's complement
        value = -((~value + 1) & 0x3FFF)
    return {
        "validated": (v & 0x8000) == 0,
        "garbled": (v & 0x4000) != 0,
        "fl": value / 4.0,
    }


def _icao_address(data) -> str:
    return "%06X" % _u24(data)


def _track_number(data) -> int:
    return _u16(data)


def _track_number_12bit(data) -> int:
    return _u16(data) & 0x0FFF


def _measured_flight_level(data) -> float:
    return struct.unpack_from(">h", data)[0] * FLIGHT_LEVEL_SCALE


def _wgs84(scale: float) -> Callable[..., FieldValue]:
    def decode(data) -> FieldValue:
        lat, lon = struct.unpack_from(">ii", data)
        return {"latitude": lat * scale, "longitude": lon * scale}
    return decode


def _time_of_applicability(data) -> FieldValue:
    raw = _u24(data)
    return {"raw": raw, "seconds": raw * TIME_OF_DAY_SCALE}


def _selected_altitude(data) -> FieldValue:
    v = _u16(data)
    return {"source": (v >> 15) & 0x01, "altitude": (v & 0x7FFF) * ALTITUDE_STEP_FT}


def _final_state_selected_altitude(data) -> FieldValue:
    v = _u16(data)
    return {
        "mv": (v >> 15) & 0x01,
        "ah": (v >> 14) & 0x01,
        "am": (v >> 13) & 0x01,
        "altitude": (v & 0x1FFF) * ALTITUDE_STEP_FT,
    }


# --- Category tables (keyed by FRN) ---

DATA_SOURCE_ID = FieldRule("data_source_id", Fixed(2), _data_source)

CAT048_ITEMS = {
    1: DATA_SOURCE_ID,  # I048/010
    2: FieldRule("measured_position_polar", Fixed(4), _polar_position),  # I048/040
    4: FieldRule("mode3a", Fixed(2), _mode3a),  # I048/070
    5: FieldRule("flight_level", Fixed(2), _flight_level),  # I048/090
    8: FieldRule("aircraft_address", Fixed(3), _icao_address),  # I048/220
    9: FieldRule("aircraft_id", Fixed(6), decode_aircraft_id),  # I048/240
}

CAT062_ITEMS = {
    1: DATA_SOURCE_ID,  # I062/010
    4: FieldRule("track_number", Fixed(2), _track_number),  # I062/040
    8: FieldRule("position_wgs84", Fixed(8), _wgs84(CAT062_WGS84_SCALE)),  # I062/105
    10: FieldRule("measured_flight_level", Fixed(2), _measured_flight_level),  # I062/136
}

CAT034_ITEMS = {
    1: DATA_SOURCE_ID,  # I034/010
}

CAT021_ITEMS = {
    1: DATA_SOURCE_ID,  # I021/010
    2: FieldRule("target_report_descriptor", FXTerminated(10), _opaque),  # I021/040
    3: FieldRule("track_number", Fixed(2), _track_number_12bit),  # I021/161
    4: FieldRule("service_id", Fixed(1), _octet),  # I021/015
    5: FieldRule("time_of_applicability_position", Fixed(3), _time_of_applicability),  # I021/071
    6: FieldRule("position_wgs84", Fixed(8), _wgs84(CAT021_WGS84_SCALE)),  # I021/130
    7: FieldRule("position_wgs84_high_res", Fixed(8), _wgs84(CAT021_WGS84_HIGH_RES_SCALE)),  # I021/131
    11: FieldRule("target_address", Fixed(3), _icao_address),  # I021/080
    16: FieldRule("selected_altitude", Fixed(2), _selected_altitude),  # I021/146
    17: FieldRule("final_state_selected_altitude", Fixed(2), _final_state_selected_altitude),  # I021/148
    # I021/110 is a compound item; only its extent is estimated
    20: FieldRule("trajectory_intent", Estimated(), _opaque),
    22: FieldRule("target_identification", Fixed(6), decode_aircraft_id),  # I021/170
    23: FieldRule("emitter_category", Fixed(1), _octet),  # I021/020
}

CATEGORY_TABLES: Dict[int, Dict[int, FieldRule]] = {
    48: CAT048_ITEMS,
    62: CAT062_ITEMS,
    34: CAT034_ITEMS,
    21: CAT021_ITEMS,
}


def generic_item_name(category: int, frn: int) -> str:
    return f"I{category:03d}_{frn:03d}"


def decode_field(data, category: int, frn: int) -> Tuple[str, Optional[FieldValue], int]:
    """Decodes the item announced by `frn` at the start of `data`.

    Returns (name, value, bytes consumed). A consumed count of 0 means the
    remaining bytes cannot hold the item; the caller skips it.
    """
    rule = CATEGORY_TABLES.get(category, {}).get(frn)
    if rule is None:
        rule = FieldRule(generic_item_name(category, frn), Estimated(), _opaque)

    value, consumed = rule.apply(data)
    return rule.name, value, consumed
