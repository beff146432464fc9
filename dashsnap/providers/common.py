SOURCE_NAMES = [
    "wipData",
    "ofData",
    "pctData",
    "forecastData",
    "bbbkData",
    "dailySalesData",
    "lostSalesData",
    "otaData",
    "materialData",
    "batchExpiryData",
]

# Raw WIP columns -> dashboard field names
WIP_FIELDS = {
    "Product_ID": "id",
    "Product_Name": "name",
    "Batch_No": "batch",
    "Tgl Timbang": "startDate",
    "Hari WIP": "duration",
    "Close BPHP": "physicalDate",
    "Tanggal Penarikan": "tarikDate",
    "Pengelompokan": "kelompok",
    "leadTime": "leadTime",
    "Dept": "dept",
    "Group_PNCategoryName": "groupPNCategory",
}

def _split_steps(value) -> list[str]:
    if not isinstance(value, str):
        return []
    return [part.strip() for part in value.split(";") if part.strip()]

def convert_wip_rows(rows) -> list[dict]:
    if not isinstance(rows, list):
        return []
    out = []
    for item in rows:
        if not isinstance(item, dict):
            continue
        converted = {target: item.get(source) for source, target in WIP_FIELDS.items()}
        converted["process"] = _split_steps(item.get("Tahapan Berjalan"))
        out.append(converted)
    return out

def extract_rows(body):
    """Source endpoints answer with a bare array or wrap it under data/recordset."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in ("data", "recordset"):
            if isinstance(body.get(key), list):
                return body[key]
    return None
