"""
Exchange segment names -> broker segment keys, and instrument kind codes.

Callers (planner tool args, config) use loose names like "NSE" or "INDEX";
the broker only accepts its exact keys ("NSE_EQ", "IDX_I", ...).
"""

SEGMENT_KEYS: dict[str, str] = {
    "NSE": "NSE_EQ",
    "NSE_EQ": "NSE_EQ",
    "NSE_FNO": "NSE_FNO",
    "BSE": "BSE_EQ",
    "BSE_EQ": "BSE_EQ",
    "BSE_FNO": "BSE_FNO",
    "MCX": "MCX_COMM",
    "MCX_COMM": "MCX_COMM",
    "NSE_CURRENCY": "NSE_CURRENCY",
    "BSE_CURRENCY": "BSE_CURRENCY",
    "INDEX": "IDX_I",
    "IDX": "IDX_I",
    "IDX_I": "IDX_I",
}

# Instrument kind codes the historical endpoints require.
INSTRUMENT_INDEX = "INDEX"
INSTRUMENT_EQUITY = "EQUITY"
INSTRUMENT_FUTIDX = "FUTIDX"
INSTRUMENT_OPTIDX = "OPTIDX"
INSTRUMENT_FUTSTK = "FUTSTK"
INSTRUMENT_OPTSTK = "OPTSTK"
INSTRUMENT_FUTCUR = "FUTCUR"
INSTRUMENT_FUTCOM = "FUTCOM"

INSTRUMENT_KINDS = frozenset(
    {
        INSTRUMENT_INDEX,
        INSTRUMENT_EQUITY,
        INSTRUMENT_FUTIDX,
        INSTRUMENT_OPTIDX,
        INSTRUMENT_FUTSTK,
        INSTRUMENT_OPTSTK,
        INSTRUMENT_FUTCUR,
        INSTRUMENT_FUTCOM,
    }
)

# Segments where every security has a single obvious kind.
DEFAULT_KIND_BY_SEGMENT: dict[str, str] = {
    "IDX_I": INSTRUMENT_INDEX,
    "NSE_EQ": INSTRUMENT_EQUITY,
    "BSE_EQ": INSTRUMENT_EQUITY,
}


def segment_key(segment: str) -> str:
    """Translate a generic segment name into the broker's key. Unknown names pass through upper-cased."""
    name = str(segment).strip().upper()
    return SEGMENT_KEYS.get(name, name)
