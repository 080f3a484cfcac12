from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pandas as pd
import streamlit as st

from transport_emissions.charts import emissions_chart
from transport_emissions.config import EXPORT_FORMATS, TABULAR_EXTENSIONS, SessionContext, configure_logging
from transport_emissions.import_export import read_tabular_preview, validate_file_type
from transport_emissions.models import OverrideFactor
from transport_emissions.viewers import ViewerTable, build_emissions_table
from transport_emissions.workbook_export import export_emissions_workbook
from transport_emissions.workflow import FormMode, TransportEmissionWorkflow, WorkflowSnapshot

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _ensure_state() -> None:
    defaults = {
        "session_context": SessionContext.from_env(),
        "workflow": None,
        "downloads": {},
        "last_upload": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _run(action: Callable[[TransportEmissionWorkflow], Awaitable[Any]]) -> Any:
    workflow: TransportEmissionWorkflow = st.session_state.workflow

    async def _go() -> Any:
        result = await action(workflow)
        await workflow.settle()
        return result

    return asyncio.run(_go())


def _connect(session: SessionContext) -> None:
    st.session_state.session_context = session
    st.session_state.workflow = TransportEmissionWorkflow.from_session(session)
    st.session_state.downloads = {}
    _run(lambda wf: wf.activate())


def _render_table(workflow: TransportEmissionWorkflow, snap: WorkflowSnapshot) -> None:
    if snap.load_error:
        st.error(snap.load_error)

    if snap.is_loading:
        st.info("Data loading...")
        return
    if not snap.records:
        st.info("No transport emissions yet.")
        return

    table_df = build_emissions_table(snap.records, workflow.cache.references)
    st.dataframe(table_df, use_container_width=True, hide_index=True)
    st.plotly_chart(emissions_chart(table_df), use_container_width=True)

    record_ids = [r.id for r in snap.records]
    selected = st.selectbox("Emission", record_ids, format_func=lambda rid: f"Emission #{rid}")
    c1, c2, c3, c4 = st.columns(4)
    if c1.button("Edit", use_container_width=True):
        _run(lambda wf: wf.open_edit(selected))
        st.rerun()
    if c2.button("Delete", use_container_width=True):
        workflow.request_delete(selected)
        st.rerun()
    if c3.button("View overrides", use_container_width=True):
        workflow.show_overrides(selected)
        st.rerun()
    if c4.button("View BOM items", use_container_width=True):
        workflow.show_bom_items(selected)
        st.rerun()


def _apply_override_rows(workflow: TransportEmissionWorkflow, edited: pd.DataFrame) -> None:
    rows = edited.dropna(how="all").to_dict(orient="records")
    existing = len(workflow.form.draft.override_factors)

    for index, row in enumerate(rows):
        if index >= existing:
            workflow.add_override()
        workflow.update_override(index, "lifecycle_stage", str(row.get("lifecycle_stage") or ""))
        for field_name in ("biogenic", "non_biogenic"):
            value = row.get(field_name)
            workflow.update_override(index, field_name, "" if value is None or pd.isna(value) else str(value))

    for index in range(existing - 1, len(rows) - 1, -1):
        workflow.remove_override(index)


def _apply_line_items(workflow: TransportEmissionWorkflow, chosen: List[int]) -> None:
    current = list(workflow.form.draft.line_items)
    for item_id in current:
        if item_id not in chosen:
            workflow.remove_line_item(item_id)
    for item_id in chosen:
        workflow.add_line_item(item_id)


def _override_frame(factors: List[OverrideFactor]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {"lifecycle_stage": f.lifecycle_stage, "biogenic": f.co2_biogenic, "non_biogenic": f.co2_non_biogenic}
            for f in factors
        ],
        columns=["lifecycle_stage", "biogenic", "non_biogenic"],
    )


def _render_form(workflow: TransportEmissionWorkflow, snap: WorkflowSnapshot) -> None:
    title = "Edit Transport Emission" if snap.form_mode == FormMode.EDIT else "Add Transport Emission"
    draft = snap.draft
    cache = workflow.cache

    with st.container(border=True):
        st.markdown(f"### {title}")
        if snap.form_error:
            st.error(snap.form_error)

        query = st.text_input("Search references", value=cache.reference_query)
        if query != cache.reference_query:
            workflow.set_reference_query(query)
        options = [ref.name for ref in workflow.reference_options()]
        current_name = workflow.form.selected_reference_name(cache.references)
        if current_name and current_name not in options:
            options.insert(0, current_name)

        stage_labels: Dict[str, str] = {c.value: c.display_name for c in cache.lifecycle_choices}
        bom_labels = {item.id: f"{item.product_name} (qty {item.quantity})" for item in cache.bom_items}

        with st.form(f"transport-form-{snap.form_mode.value}-{snap.form_target_id}"):
            left, right = st.columns(2)
            distance = left.text_input("Distance (km) *", value=draft.distance)
            weight = right.text_input("Weight (tonnes) *", value=draft.weight)
            reference_name = st.selectbox(
                "Reference Emission Factor *",
                [""] + options,
                index=([""] + options).index(current_name) if current_name in options else 0,
            )

            st.caption("Override factors per lifecycle stage " + (f"({', '.join(stage_labels)})" if stage_labels else ""))
            edited = st.data_editor(
                _override_frame(draft.override_factors),
                num_rows="dynamic",
                use_container_width=True,
                column_config={
                    "lifecycle_stage": st.column_config.SelectboxColumn(
                        "Lifecycle Stage", options=list(stage_labels) or None
                    ),
                },
            )

            chosen = st.multiselect(
                "BOM line items",
                sorted(set(bom_labels) | set(draft.line_items)),
                default=list(draft.line_items),
                format_func=lambda item_id: bom_labels.get(item_id, f"Unknown Item ({item_id})"),
            )

            save_col, cancel_col = st.columns(2)
            submitted = save_col.form_submit_button(snap.submit_label, disabled=snap.is_submitting)
            cancelled = cancel_col.form_submit_button("Cancel")

        if cancelled:
            workflow.cancel_form()
            st.rerun()
        if submitted:
            workflow.update_field("distance", distance)
            workflow.update_field("weight", weight)
            workflow.select_reference(reference_name or None)
            _apply_override_rows(workflow, edited)
            _apply_line_items(workflow, chosen)
            if _run(lambda wf: wf.submit_draft()):
                st.success("Transport emission saved.")
            st.rerun()


def _render_delete_confirmation(workflow: TransportEmissionWorkflow, snap: WorkflowSnapshot) -> None:
    with st.container(border=True):
        st.markdown("### Confirm Deletion")
        st.write("Are you sure you want to delete this transport emission? This action cannot be undone.")
        if snap.delete_error:
            st.error(snap.delete_error)
        c1, c2 = st.columns(2)
        if c1.button("Cancel", key="cancel-delete"):
            workflow.cancel_delete()
            st.rerun()
        if c2.button(snap.delete_label, key="confirm-delete", type="primary", disabled=snap.is_deleting):
            _run(lambda wf: wf.confirm_delete())
            st.rerun()


def _render_viewer(view: ViewerTable, on_close: Callable[[], None], key: str) -> None:
    with st.container(border=True):
        st.markdown(f"### {view.title}")
        if view.is_empty:
            st.caption(view.empty_message)
        else:
            st.dataframe(view.rows, use_container_width=True, hide_index=True)
        if st.button("Close", key=key):
            on_close()
            st.rerun()


def _render_import_export(workflow: TransportEmissionWorkflow, snap: WorkflowSnapshot) -> None:
    st.markdown("### Import / Export")

    if snap.import_blocked:
        with st.container(border=True):
            st.markdown("#### Template File Blocked")
            st.write(snap.import_blocked_message)
            if st.button("Close", key="close-blocked"):
                workflow.dismiss_import_notice()
                st.rerun()

    if snap.import_notice:
        st.success(snap.import_notice)
    if snap.import_error:
        st.error(snap.import_error)
    if snap.import_errors:
        st.dataframe(pd.DataFrame(list(snap.import_errors)), use_container_width=True, hide_index=True)

    uploaded = st.file_uploader("Import from CSV/XLSX", type=["csv", "xlsx", "aasx", "json", "xml"])
    upload_name = uploaded.name if uploaded is not None else None
    if upload_name != st.session_state.last_upload:
        st.session_state.last_upload = upload_name
        if upload_name is not None:
            workflow.clear_import_messages()
            st.rerun()
    if uploaded is not None:
        content = uploaded.getvalue()
        if validate_file_type(uploaded.name) in TABULAR_EXTENSIONS:
            try:
                st.dataframe(read_tabular_preview(uploaded.name, content), use_container_width=True)
            except ValueError as exc:
                st.warning(str(exc))
        if st.button("Upload", disabled=snap.is_importing):
            _run(lambda wf: wf.import_file(uploaded.name, content))
            st.rerun()

    cols = st.columns(len(EXPORT_FORMATS) * 2 + 1)
    for i, fmt in enumerate(EXPORT_FORMATS):
        if cols[i * 2].button(f"{fmt.upper()} Template"):
            st.session_state.downloads[f"template-{fmt}"] = _run(lambda wf, f=fmt: wf.download_template(f))
        if cols[i * 2 + 1].button(f"{fmt.upper()} Data"):
            st.session_state.downloads[f"data-{fmt}"] = _run(lambda wf, f=fmt: wf.download_export(f))

    workbook = export_emissions_workbook(snap.records, workflow.cache.references, workflow.cache.lifecycle_choices)
    cols[-1].download_button(
        "Local XLSX", data=workbook, file_name="transport_emissions.xlsx", mime=XLSX_MEDIA_TYPE
    )

    for key, file in list(st.session_state.downloads.items()):
        if file is None:
            continue
        st.download_button(f"Save {file.filename}", data=file.content, file_name=file.filename, mime=file.media_type, key=f"dl-{key}")


st.set_page_config(page_title="Transport Emissions", page_icon="🚚", layout="wide")
configure_logging()
_ensure_state()

st.sidebar.header("Session")
ctx: SessionContext = st.session_state.session_context
token = st.sidebar.text_input("Access Token", value=ctx.access_token or "", type="password")
company_id = st.sidebar.number_input("Company ID", min_value=0, value=ctx.company_id or 0, step=1)
product_id = st.sidebar.number_input("Product ID", min_value=0, value=ctx.product_id or 0, step=1)

if st.sidebar.button("Load Product") or (st.session_state.workflow is None and ctx.has_credentials):
    _connect(SessionContext(token or None, int(company_id) or None, int(product_id) or None))

st.title("Transportation Emissions")
st.write("Add or manage transportation emissions.")

workflow: Optional[TransportEmissionWorkflow] = st.session_state.workflow
if workflow is None:
    st.info("Enter an access token, company and product to load transport emissions.")
    st.stop()

snap = workflow.snapshot()
if snap.auth_required:
    st.warning("Your session is missing credentials. Please sign in again.")

_render_table(workflow, snap)

if st.button("Add Transport Emission", type="primary", disabled=snap.form_open):
    _run(lambda wf: wf.open_create())
    st.rerun()

if snap.form_open:
    _render_form(workflow, snap)
if snap.delete_confirm_open:
    _render_delete_confirmation(workflow, snap)
if snap.overrides_record is not None:
    _render_viewer(workflow.overrides_view(), workflow.close_overrides, key="close-overrides")
if snap.bom_record is not None:
    _render_viewer(workflow.bom_items_view(), workflow.close_bom_items, key="close-bom")

_render_import_export(workflow, snap)
