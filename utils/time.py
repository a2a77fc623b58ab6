# utils/time.py

def parse_duration(value) -> float:
    """"150ms" / "30s" / "5m" / "2h" / "1d" or a bare number of seconds -> seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    tf = str(value).strip()
    if tf.endswith("ms"):
        return int(tf[:-2]) / 1000
    if tf.endswith("s"):
        return float(tf[:-1])
    if tf.endswith("m"):
        return float(tf[:-1]) * 60
    if tf.endswith("h"):
        return float(tf[:-1]) * 3_600
    if tf.endswith("d"):
        return float(tf[:-1]) * 86_400
    try:
        return float(tf)
    except ValueError:
        raise ValueError(f"unknown duration: {value}") from None
