from __future__ import annotations

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go


def emissions_chart(table_df: pd.DataFrame) -> go.Figure:
    """Bar chart of total transport emissions grouped by reference."""
    if table_df is None or table_df.empty:
        return go.Figure()

    required = {"reference", "total_kg_co2e"}
    missing = required - set(table_df.columns)
    if missing:
        raise ValueError(f"Emissions table missing columns: {', '.join(sorted(missing))}")

    grouped = (
        table_df.dropna(subset=["total_kg_co2e"])
        .groupby("reference", as_index=False)
        .agg(total_kg_co2e=("total_kg_co2e", "sum"), records=("reference", "size"))
        .sort_values("total_kg_co2e", ascending=False)
    )

    fig = px.bar(
        grouped,
        x="reference",
        y="total_kg_co2e",
        hover_data=["records"],
        title="Transport Emissions by Reference",
    )
    fig.update_layout(font_size=11, yaxis_title="kg CO₂e", xaxis_title="Reference")
    return fig
