"""
Excel export for a KpiRun.

Sheets: KPI Summary (category x metric), KPI Results (long form with
numerators/denominators), any report tables (Top Defects, Order Status),
and Run Health (warning/error counts plus messages).

Dependencies: pandas, xlsxwriter.
"""

from datetime import datetime

import pandas as pd

from canonical_schema import results_to_frame


SHEET_ORDER = ["KPI Summary", "KPI Results", "Top Defects", "Order Status", "Run Health"]

# Columns holding percentages, colored red -> green
RATE_COLUMNS = [
    "attendance_rate", "target_achieved_pct", "dynamic_target_pct",
    "target_efficiency_pct", "actual_efficiency_pct",
    "order_pass_rate", "volume_pass_rate", "Completion %",
]

# Columns where higher is worse, colored green -> red
BAD_RATE_COLUMNS = ["absenteeism_rate", "defect_rate", "% of Total"]


def summary_frame(run):
    """Category x metric pivot of a run, metrics in report order."""
    long = results_to_frame(run.results)
    if long.empty:
        return pd.DataFrame(columns=["Category"])
    metric_order = list(dict.fromkeys(long["Metric"]))
    category_order = list(dict.fromkeys(long["Category"]))
    wide = long.pivot(index="Category", columns="Metric", values="Value")
    wide = wide.reindex(index=category_order, columns=metric_order)
    wide = wide.where(wide.notna(), "")
    return wide.reset_index()


def health_frame(run):
    rows = [{"Item": k, "Value": v} for k, v in run.meta.to_record().items()]
    rows += [{"Item": "warning", "Value": msg} for msg in run.meta.warning_messages]
    rows += [{"Item": "info", "Value": msg} for msg in run.meta.info_messages]
    return pd.DataFrame(rows, columns=["Item", "Value"])


def report_sheets(run):
    sheets = {
        "KPI Summary": summary_frame(run),
        "KPI Results": results_to_frame(run.results),
    }
    for name, df in run.tables.items():
        sheets[name] = df
    sheets["Run Health"] = health_frame(run)
    return sheets


def write_excel(run, output_path):
    print(f"Writing: {output_path}")
    sheets = report_sheets(run)
    title = f"{run.report.title()} KPIs: {run.analysis_date.isoformat()}"

    with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
        workbook = writer.book

        header_fmt = workbook.add_format({
            "bold": True, "bg_color": "#1B2A4A", "font_color": "white",
            "border": 1, "text_wrap": True, "valign": "vcenter", "font_size": 11
        })
        title_fmt = workbook.add_format({"bold": True, "font_size": 14, "font_color": "#1B2A4A"})
        subtitle_fmt = workbook.add_format({"italic": True, "font_size": 10, "font_color": "#666666"})
        warn_fmt = workbook.add_format({"font_color": "#9C0006", "bg_color": "#FFC7CE"})

        final_order = [s for s in SHEET_ORDER if s in sheets] + [s for s in sheets if s not in SHEET_ORDER]
        for sheet_name in final_order:
            df = sheets[sheet_name]
            safe_name = sheet_name[:31]
            df.to_excel(writer, sheet_name=safe_name, startrow=2, index=False)
            ws = writer.sheets[safe_name]

            ws.write(0, 0, f"{title} | {sheet_name}", title_fmt)
            ws.write(1, 0, f"As of {run.as_of:%Y-%m-%d %H:%M} | generated "
                           f"{datetime.now().strftime('%Y-%m-%d %H:%M')}", subtitle_fmt)

            for col_num, col_name in enumerate(df.columns):
                ws.write(2, col_num, col_name, header_fmt)

            # Auto-width
            for col_num, col_name in enumerate(df.columns):
                max_len = max(
                    df[col_name].astype(str).map(len).max() if len(df) > 0 else 0,
                    len(str(col_name))
                )
                ws.set_column(col_num, col_num, min(max_len + 4, 60))

            for label in RATE_COLUMNS:
                if label in df.columns and len(df) > 0:
                    col_idx = list(df.columns).index(label)
                    ws.conditional_format(3, col_idx, 2 + len(df), col_idx, {
                        "type": "3_color_scale",
                        "min_color": "#F8696B", "mid_color": "#FFEB84", "max_color": "#63BE7B",
                    })
            for label in BAD_RATE_COLUMNS:
                if label in df.columns and len(df) > 0:
                    col_idx = list(df.columns).index(label)
                    ws.conditional_format(3, col_idx, 2 + len(df), col_idx, {
                        "type": "3_color_scale",
                        "min_color": "#63BE7B", "mid_color": "#FFEB84", "max_color": "#F8696B",
                    })

            if sheet_name == "Run Health":
                ws.set_column(1, 1, 100)
                for row_num in range(len(df)):
                    if df.iloc[row_num]["Item"] == "warning":
                        ws.write(row_num + 3, 1, df.iloc[row_num]["Value"], warn_fmt)

        writer.sheets["KPI Summary"].activate()

    print(f"Done! Open: {output_path}")
    return output_path
