"""Plotly figures for budget progress.

Each function takes the output of :mod:`budget_engine.progress` and returns
a ``plotly.graph_objects.Figure``. Amounts arrive in cents and are plotted
in dollars.
"""

from __future__ import annotations

from typing import Dict, Optional

import pandas as pd
import plotly.graph_objects as go

from .progress import ON_TRACK, OVER_BUDGET, WARNING, PeriodDays

STATUS_COLORS: Dict[str, str] = {
    ON_TRACK: '#22c55e',
    WARNING: '#f59e0b',
    OVER_BUDGET: '#ef4444',
}
ALLOCATED_COLOR = '#cbd5e1'


def _empty_figure() -> go.Figure:
    fig = go.Figure()
    fig.update_layout(title="No data to display")
    return fig


def create_progress_chart(
    progress_df: pd.DataFrame,
    category_names: Optional[Dict[str, str]] = None,
    title: Optional[str] = None,
) -> go.Figure:
    """Horizontal bars of allocated versus spent per category.

    Parameters
    ----------
    progress_df : pandas.DataFrame
        Output of :func:`budget_engine.progress.category_progress`.
    category_names : dict, optional
        Maps category ids to display names. Unknown ids are shown as-is.
    title : str, optional
        Chart title.

    Returns
    -------
    plotly.graph_objects.Figure
        Grouped horizontal bar chart; spent bars are colored by status.
    """
    if progress_df is None or progress_df.empty:
        return _empty_figure()

    names = category_names or {}
    labels = [names.get(cid, cid) for cid in progress_df['category_id']]
    allocated = progress_df['allocated'] / 100
    spent = progress_df['spent'] / 100

    fig = go.Figure()
    fig.add_trace(
        go.Bar(
            y=labels,
            x=allocated,
            name='Allocated',
            orientation='h',
            marker_color=ALLOCATED_COLOR,
        )
    )
    fig.add_trace(
        go.Bar(
            y=labels,
            x=spent,
            name='Spent',
            orientation='h',
            marker_color=[STATUS_COLORS.get(status, ALLOCATED_COLOR) for status in progress_df['status']],
            customdata=progress_df[['percent_used', 'status']].to_numpy(),
            hovertemplate='%{y}<br>$%{x:,.2f} spent (%{customdata[0]}%%)<br>%{customdata[1]}<extra></extra>',
        )
    )
    fig.update_layout(
        title=title or 'Spending by category',
        barmode='group',
        xaxis_title='Amount ($)',
        yaxis_title='Category',
    )
    return fig


def create_period_gauge(period: PeriodDays, title: Optional[str] = None) -> go.Figure:
    """Gauge showing how much of the budget period has elapsed."""
    if period is None or period.total_days <= 0:
        return _empty_figure()
    fig = go.Figure(
        go.Indicator(
            mode='gauge+number',
            value=period.percent_complete,
            number={'suffix': '%'},
            title={'text': title or f"{period.days_remaining} of {period.total_days} days left"},
            gauge={'axis': {'range': [0, 100]}},
        )
    )
    return fig
