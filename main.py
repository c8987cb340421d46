# main.py
# Flet desktop front end for the optimal samples selection system.
# Collects and validates M, N, K, J, S and the minimum group count, draws or accepts
# the sampled universe, runs backend.Sample in a worker thread (which in turn solves
# in a child process), shows the groups and keeps the run history via db.py.
# Optional first command-line argument: database file or directory.

import flet as ft
import os
import sys
import threading
import time

from backend import (Sample, InvalidParameter, validate_params, format_results, comb,
                     HAS_ORTOOLS, MODE_FAST, MODE_THOROUGH, MODE_EXACT, DEFAULT_TIMEOUT, SUCCESS_STATUSES)
import db

MAX_SETS_TO_DISPLAY = 50
FORM_FIELDS = ('m', 'n', 'k', 'j', 's', 'min_groups', 'timeout')
FORM_DEFAULTS = {'m': '45', 'n': '8', 'k': '6', 'j': '4', 's': '4', 'min_groups': '1', 'timeout': str(DEFAULT_TIMEOUT)}


# --- Form Helpers ---

def read_form(values):
    """
    Converts the raw form strings into integers and checks the solve constraints.

    Args:
        values (dict): field name -> text, for every name in FORM_FIELDS

    Returns:
        dict: integer parameters

    Raises:
        InvalidParameter: naming the first bad field
    """
    params = {}
    for name in FORM_FIELDS:
        raw = str(values.get(name, '')).strip()
        try:
            params[name] = int(raw)
        except ValueError:
            raise InvalidParameter(f"{name.upper()} ('{raw}') must be a valid integer.") from None
    if params['timeout'] < 1:
        raise InvalidParameter(f"Timeout ({params['timeout']}) cannot be less than 1.")
    validate_params(params['n'], params['k'], params['j'], params['s'], params['min_groups'], m=params['m'])
    return params


def parse_universe(text, n, m):
    """Parses N space- or comma-separated distinct numbers in 1..M, returned ascending."""
    parts = text.replace(',', ' ').split()
    if not parts:
        raise InvalidParameter("Manual universe input is empty.")
    numbers = []
    for part in parts:
        try:
            numbers.append(int(part))
        except ValueError:
            raise InvalidParameter(f"Input '{part}' is not a valid integer.") from None
    if len(numbers) != n:
        raise InvalidParameter(f"Expected {n} numbers, but got {len(numbers)}.")
    if len(set(numbers)) != len(numbers):
        raise InvalidParameter("Input numbers contain duplicates.")
    invalid = [x for x in numbers if not (1 <= x <= m)]
    if invalid:
        raise InvalidParameter(f"Numbers must be between 1 and {m}. Invalid: {invalid}")
    return sorted(numbers)


def format_result_text(sample):
    """Text for the main result pane after a finished run."""
    result = sample.result or {}
    status = result.get('status', 'Unknown')
    lines = [
        f"Result ID: {sample.ans}",
        f"Universe ({len(sample.univ)} items): {sample.univ}",
        f"Mode: {sample.mode}   Algorithm: {result.get('alg', 'N/A')}",
        f"Status: {status}",
        f"Time Taken: {result.get('time', 0):.2f} seconds",
    ]
    if result.get('error_message'):
        lines.append(f"Note: {result['error_message']}")
    lines.append(f"Found Sets ({len(sample.sets)} groups):")
    shown = format_results(sample.sets[:MAX_SETS_TO_DISPLAY])
    for i, group in enumerate(shown, start=1):
        lines.append(f"  {i}. {' '.join(group)}")
    if len(sample.sets) > MAX_SETS_TO_DISPLAY:
        lines.append(f"  ... ({len(sample.sets) - MAX_SETS_TO_DISPLAY} more not shown)")
    if status not in SUCCESS_STATUSES:
        lines.append("  (Not every j-subset is covered by these groups)")
    return "\n".join(lines)


def format_record_details(details):
    """Text for a stored run in the history view."""
    lines = [
        f"Result ID: {details.get('result_id', 'N/A')}",
        f"Saved: {details.get('timestamp', 'N/A')}",
        f"Parameters: M={details['m']}, N={details['n']}, K={details['k']}, J={details['j']}, S={details['s']}, "
        f"min_groups={details.get('min_groups', 1)}",
        f"Mode: {details.get('mode', 'N/A')}   Algorithm: {details.get('algorithm', 'N/A')}   "
        f"Status: {details.get('status', 'N/A')}",
        f"Time Taken: {details.get('time_taken') or 0:.2f} seconds",
        f"Universe: {details.get('universe_parsed', [])}",
        f"Sets ({details.get('num_results', 0)} groups):",
    ]
    for i, group in enumerate(format_results(details.get('sets_found_parsed', [])), start=1):
        lines.append(f"  {i}. {' '.join(group)}")
    return "\n".join(lines)


def configure_db_path(argv):
    """Points db.DB_FILE at the file or directory given as first argument, if any."""
    if len(argv) < 2:
        return db.DB_FILE
    custom_db_path = argv[1]
    if os.path.isdir(custom_db_path):
        db.DB_FILE = os.path.join(custom_db_path, "kcover_results.db")
    elif os.sep in custom_db_path or custom_db_path.endswith(".db"):
        db_dir = os.path.dirname(os.path.abspath(custom_db_path))
        os.makedirs(db_dir, exist_ok=True)
        db.DB_FILE = custom_db_path
    else:
        print(f"Warning: Invalid database path argument '{custom_db_path}'. Using default path '{db.DB_FILE}'.")
        return db.DB_FILE
    print(f"Info: Using database path specified via command line: {os.path.abspath(db.DB_FILE)}")
    return db.DB_FILE


# --- Main Application Function ---
def main(page: ft.Page):
    """Builds and runs the Flet application"""
    page.title = "An Optimal Samples Selection System"
    page.theme_mode = ft.ThemeMode.LIGHT
    page.vertical_alignment = ft.MainAxisAlignment.START
    page.window.width = 900
    page.window.height = 850

    selected_db_result_id = ft.Ref[int]()
    current_sample = ft.Ref[Sample]()

    # --- Input Controls ---
    labels = {'m': "M (Base Set)", 'n': "N (Universe)", 'k': "K (Group Size)", 'j': "J (Subset)",
              's': "S (Intersection >=)", 'min_groups': "Min Groups", 'timeout': "ILP Limit (s)"}
    fields = {name: ft.TextField(label=labels[name], value=FORM_DEFAULTS[name], width=110) for name in FORM_FIELDS}

    mode_group = ft.RadioGroup(
        value=MODE_FAST,
        content=ft.Row([
            ft.Radio(value=MODE_FAST, label="Fast (greedy)"),
            ft.Radio(value=MODE_THOROUGH, label="Thorough (search)"),
            ft.Radio(value=MODE_EXACT, label="Exact (CP-SAT)", disabled=not HAS_ORTOOLS),
        ]),
    )

    chk_manual_univ = ft.Checkbox(label="Manual Universe Input", value=False)
    txt_manual_univ = ft.TextField(label="Enter N numbers (space-separated, range 1~M)", visible=False, width=600,
                                   hint_text="Example: 1 5 10 15 20 25 30 35")

    size_info = ft.Text("", size=12)
    sample_result_info = ft.Text("Calculation results will be displayed here...", size=12, selectable=True)
    log_output = ft.ListView(expand=True, spacing=5, auto_scroll=True, height=180)

    submit_button = ft.ElevatedButton(text="Start Calculation", icon=ft.Icons.PLAY_ARROW)
    cancel_button = ft.ElevatedButton(text="Cancel", icon=ft.Icons.STOP, disabled=True)
    show_db_view_button = ft.ElevatedButton("View/Manage Saved Results", icon=ft.Icons.STORAGE)
    progress_ring = ft.ProgressRing(visible=False, width=20, height=20, stroke_width=3)

    # --- Database View Controls ---
    db_results_list_view = ft.ListView(expand=True, spacing=5)
    db_results_radio_group = ft.RadioGroup(content=db_results_list_view)
    db_result_details_view = ft.Text("Select a record above, then click 'Show Details'.", selectable=True)
    refresh_db_button = ft.ElevatedButton("Refresh List", icon=ft.Icons.REFRESH)
    display_details_button = ft.ElevatedButton("Show Details", icon=ft.Icons.VISIBILITY, disabled=True)
    delete_selected_button = ft.ElevatedButton("Delete Selected", icon=ft.Icons.DELETE_FOREVER,
                                               color=ft.Colors.RED, disabled=True)
    back_to_main_button = ft.ElevatedButton("Back to Calculation Interface", icon=ft.Icons.ARROW_BACK)

    # --- Helper Functions and Event Handlers ---
    def log_message(message: str, is_error: bool = False):
        timestamp = time.strftime("%H:%M:%S", time.localtime())
        color = ft.Colors.RED if is_error else ft.Colors.BLACK87
        log_output.controls.append(ft.Text(f"[{timestamp}] {message}", size=11, selectable=True, color=color))
        page.update()

    def show_info_message(text_control: ft.Text, message: str, is_error: bool = False):
        text_control.value = message
        text_control.color = ft.Colors.RED if is_error else ft.Colors.BLACK
        page.update()

    def set_busy(busy: bool):
        submit_button.disabled = busy
        cancel_button.disabled = not busy
        progress_ring.visible = busy
        show_db_view_button.disabled = busy
        for ctrl in list(fields.values()) + [mode_group, chk_manual_univ, txt_manual_univ]:
            ctrl.disabled = busy
        page.update()

    def update_size_info(e=None):
        try:
            params = read_form({name: field.value for name, field in fields.items()})
        except InvalidParameter as err:
            size_info.value = f"Parameters: {err}"
        else:
            size_info.value = (f"k-groups C(N,K) = {comb(params['n'], params['k'])}, "
                               f"j-groups C(N,J) = {comb(params['n'], params['j'])}")
        page.update()

    def on_manual_univ_change(e):
        txt_manual_univ.visible = chk_manual_univ.value
        page.update()

    def on_submit(e):
        try:
            params = read_form({name: field.value for name, field in fields.items()})
        except InvalidParameter as err:
            log_message(f"Parameter error: {err}", is_error=True)
            show_info_message(sample_result_info, f"Input Error: {err}", is_error=True)
            return

        univ = None
        if chk_manual_univ.value:
            try:
                univ = parse_universe(txt_manual_univ.value or '', params['n'], params['m'])
            except InvalidParameter as err:
                log_message(f"Manual Universe input error: {err}", is_error=True)
                show_info_message(sample_result_info, f"Manual Universe input error: {err}", is_error=True)
                return

        run_idx = db.get_and_increment_run_index(params['m'], params['n'], params['k'], params['j'], params['s'])
        if run_idx is None:
            msg = "Error: Could not get or update run index from the database! Calculation cancelled."
            log_message(msg, is_error=True)
            show_info_message(sample_result_info, msg, is_error=True)
            return

        sample = Sample(params['m'], params['n'], params['k'], params['j'], params['s'], params['min_groups'],
                        run_idx=run_idx, mode=mode_group.value, timeout=params['timeout'])
        if univ is not None:
            sample.set_universe(univ)
        else:
            sample.draw_universe()
        current_sample.current = sample
        log_message(f"Run {run_idx} ({sample.mode}) started on universe {sample.univ}")
        show_info_message(sample_result_info, f"Calculating (Run {run_idx})...")
        set_busy(True)
        threading.Thread(target=run_computation, args=(sample,), daemon=True).start()

    def on_cancel(e):
        sample = current_sample.current
        if sample is not None:
            log_message(f"Cancelling run {sample.run_idx}...")
            sample.cancel()

    def run_computation(sample: Sample):
        """Runs Sample.run() off the UI thread, then shows and saves the outcome."""
        try:
            sample.run()
            status = sample.result.get('status', 'Unknown')
            is_error = status not in SUCCESS_STATUSES
            show_info_message(sample_result_info, format_result_text(sample), is_error=is_error)
            log_message(f"Run {sample.run_idx} finished: {status}, {len(sample.sets)} groups.", is_error=is_error)
            if sample.sets:
                if db.save_sample(sample):
                    log_message(f"Saved result {sample.ans} to the database.")
                else:
                    log_message("Failed to save the result to the database.", is_error=True)
        except Exception as err:
            log_message(f"Unexpected error during calculation: {err}", is_error=True)
            show_info_message(sample_result_info, f"Runtime error: {err}", is_error=True)
        finally:
            current_sample.current = None
            set_busy(False)

    # --- Database View Handlers ---
    def update_db_list_view():
        db_results_list_view.controls.clear()
        for record in db.get_results_summary():
            label = (f"{db.format_result_id(record)}  [{record.get('mode') or '-'}, {record.get('status') or '-'}]"
                     f"  {record.get('timestamp', '')}")
            db_results_list_view.controls.append(ft.Radio(value=str(record['id']), label=label))
        selected_db_result_id.current = None
        db_results_radio_group.value = None
        display_details_button.disabled = True
        delete_selected_button.disabled = True
        page.update()

    def on_db_result_select(e):
        selected_db_result_id.current = int(e.control.value) if e.control.value else None
        has_selection = selected_db_result_id.current is not None
        display_details_button.disabled = not has_selection
        delete_selected_button.disabled = not has_selection
        page.update()

    def display_selected_details(e):
        details = db.get_result_details(selected_db_result_id.current)
        if details is None:
            show_info_message(db_result_details_view, "Record not found.", is_error=True)
            return
        show_info_message(db_result_details_view, format_record_details(details))

    def execute_delete(e):
        result_id = selected_db_result_id.current
        if result_id is None:
            return
        if db.delete_result(result_id):
            log_message(f"Deleted database record ID={result_id}.")
            show_info_message(db_result_details_view, f"Record ID={result_id} deleted.")
        else:
            show_info_message(db_result_details_view, f"Could not delete record ID={result_id}.", is_error=True)
        update_db_list_view()

    main_computation_view = ft.Column([
        ft.Text("Parameters", size=16, weight=ft.FontWeight.BOLD),
        ft.Row(list(fields.values()), wrap=True),
        size_info,
        mode_group,
        chk_manual_univ,
        txt_manual_univ,
        ft.Row([submit_button, cancel_button, progress_ring, show_db_view_button], wrap=True),
        ft.Container(content=sample_result_info, border=ft.border.all(1, ft.Colors.BLACK26),
                     border_radius=ft.border_radius.all(5), padding=10),
        ft.Text("Log", size=14, weight=ft.FontWeight.BOLD),
        log_output,
    ], expand=True)

    db_management_view = ft.Column([
        ft.Text("Saved Results", size=16, weight=ft.FontWeight.BOLD),
        ft.Row([refresh_db_button, display_details_button, delete_selected_button, back_to_main_button], wrap=True),
        ft.Container(content=db_results_radio_group, border=ft.border.all(1, ft.Colors.BLACK12),
                     border_radius=ft.border_radius.all(5), padding=5, height=300),
        ft.Container(content=db_result_details_view, border=ft.border.all(1, ft.Colors.BLACK26),
                     border_radius=ft.border_radius.all(5), padding=10, expand=True),
    ], visible=False, expand=True)

    def switch_view(view_name: str):
        main_computation_view.visible = view_name == 'main'
        db_management_view.visible = view_name == 'db'
        if view_name == 'db':
            update_db_list_view()
        page.update()

    # --- Event Bindings ---
    for field in fields.values():
        field.on_change = update_size_info
    chk_manual_univ.on_change = on_manual_univ_change
    submit_button.on_click = on_submit
    cancel_button.on_click = on_cancel
    show_db_view_button.on_click = lambda _: switch_view('db')
    back_to_main_button.on_click = lambda _: switch_view('main')
    refresh_db_button.on_click = lambda _: update_db_list_view()
    db_results_radio_group.on_change = on_db_result_select
    display_details_button.on_click = display_selected_details
    delete_selected_button.on_click = execute_delete

    page.add(ft.Container(content=ft.Column([main_computation_view, db_management_view], expand=True),
                          expand=True, padding=10))
    page.scroll = ft.ScrollMode.ADAPTIVE

    log_message("Application starting...")
    log_message(f"Database file path: {os.path.abspath(db.DB_FILE)}")
    log_message(f"Google OR-Tools available: {'Yes' if HAS_ORTOOLS else 'No'}")
    if not db.setup_database():
        log_message("Critical Error: Database initialization failed.", is_error=True)
    update_size_info()


# --- Application Entry Point ---
if __name__ == "__main__":
    configure_db_path(sys.argv)
    ft.app(target=main)
