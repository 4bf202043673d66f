"""Header matching for raw upstream feeds."""

import re

import pandas as pd


# Maps normalized header names found in upstream exports to internal names.
HEADER_TO_INTERNAL = {
    # Identity
    "employeeid": "employee_id",
    "empid": "employee_id",
    "employeeno": "employee_id",
    "linecode": "line_code",
    "line": "line_code",
    "ponumber": "po_number",
    "po": "po_number",
    "purchaseorder": "po_number",
    "salesordernumber": "po_number",
    "defectcode": "defect_code",
    "codeid": "defect_code",
    "article": "article",
    "articlenumber": "article",
    # Time
    "timestamp": "timestamp",
    "observedat": "timestamp",
    "scantime": "timestamp",
    "inspectiontime": "timestamp",
    "attendancetime": "timestamp",
    "attendancedate": "work_date",
    "workdate": "work_date",
    "exportdate": "work_date",
    "date": "work_date",
    "lastmodified": "last_modified",
    "terminationdate": "terminated_at",
    "terminatedat": "terminated_at",
    "resigndate": "terminated_at",
    "validfrom": "valid_from",
    "timefrom": "time_from",
    "timeto": "time_to",
    "timetype": "time_type",
    "timesequence": "time_sequence",
    # Attendance
    "attendancestatus": "status",
    "status": "status",
    "shift": "shift",
    "orgdescription": "org_description",
    "organizationcode": "org_code",
    # Production
    "goodcount": "good_count",
    "dailyquantity": "good_count",
    "productionstatus": "production_status",
    "laborcontent": "labor_content",
    "workers": "workers",
    "jph": "jph",
    "targetoutput": "target_output",
    "rateperworkerhour": "rate_per_worker_hour",
    "pphtarget": "rate_per_worker_hour",
    # Quality
    "inspectionresult": "result",
    "result": "result",
    "quantity": "quantity",
    "defectdescription": "defect_description",
    "codegroup": "code_group",
    "defectcount": "count",
    "count": "count",
    "country": "country",
    "planversion": "plan_version",
    "buildingcode": "building_code",
    "lotquantity": "lot_quantity",
    "assemblyendquantity": "assembly_end_quantity",
}


def normalize_col(name):
    """Normalize a column header for fuzzy matching."""
    s = str(name).lower().strip()
    return re.sub(r"[^a-z0-9]+", "", s)


def internal_name(name, aliases=None):
    """Resolve a raw header to its internal name, or None."""
    norm = normalize_col(name)
    if aliases:
        for internal, options in aliases.items():
            if norm == normalize_col(internal) or norm in {normalize_col(o) for o in options}:
                return internal
    return HEADER_TO_INTERNAL.get(norm)


def rename_record(record, aliases=None):
    """Return a copy of a raw mapping keyed by internal names.

    The first raw header that claims an internal name wins; unmatched
    headers pass through under their normalized name.
    """
    out = {}
    for col, value in record.items():
        internal = internal_name(col, aliases) or normalize_col(col)
        if internal in out:
            continue
        out[internal] = value
    return out


def smart_rename(df, aliases=None):
    """Rename DataFrame columns using header-name matching."""
    header_map = {}
    claimed = set()
    for col in df.columns:
        internal = internal_name(col, aliases)
        if internal and internal not in claimed:
            header_map[col] = internal
            claimed.add(internal)
    return df.rename(columns=header_map)


def frame_to_records(raw_batch):
    """Accept a DataFrame or an iterable of records; return a list.

    DataFrame rows come back as plain dicts with NaN as None. Other
    batches are returned item by item, unchecked, so a malformed item can
    be rejected on its own by the caller."""
    if isinstance(raw_batch, pd.DataFrame):
        df = raw_batch.astype(object).where(pd.notna(raw_batch), None)
        return df.to_dict("records")
    return list(raw_batch or [])
