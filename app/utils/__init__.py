"""Small value coercion helpers shared by the importers."""


def safe_float(v):
    """Parse a spreadsheet number, returning None when it is not one.

    Accepts comma as the decimal separator ("12,5" → 12.5) and ignores
    spaces used as thousands separators ("15 000" → 15000.0).
    """
    if v is None:
        return None
    if isinstance(v, (int, float)):
        return float(v)
    s = str(v).replace("\xa0", "").replace(" ", "").replace(",", ".")
    try:
        return float(s)
    except ValueError:
        return None
