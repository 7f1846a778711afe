"""
PDF Chunk Merger - GUI Application
Collects PDF files, merges them in natural order into size-limited parts and
bundles the parts into one ZIP archive
"""

import tkinter as tk
from tkinter import ttk, filedialog, messagebox
import threading
import os
import platform
import subprocess
from chunk_merger_engine import (
    MB,
    CollectionError,
    FileCollector,
    MergeOrchestrator,
    RunPhase,
    sequence_files,
)

_LOG_MAX_LINES = 5000
_LOG_TRIM_LINES = 1000
_PREVIEW_LIMIT = 50

STRATEGY_LABELS = {
    "Keep under the limit": "under",
    "May exceed the limit (includes last file)": "over",
}


class ChunkMergerGUI:
    def __init__(self, root):
        self.root = root
        self.root.title("PDF Chunk Merger")
        self.root.geometry("900x760")
        self.root.resizable(True, True)

        # Variables
        self.output_folder = tk.StringVar()
        # Default part size: 20 MB
        self.limit_mb = tk.IntVar(value=20)
        self.strategy_label = tk.StringVar(value="Keep under the limit")
        self.isolate_failures = tk.BooleanVar(value=False)
        self.add_bookmarks = tk.BooleanVar(value=False)

        self.input_paths = []
        self.selected_files = []
        self.collector = FileCollector()

        self.is_processing = False
        self.cancel_event = threading.Event()
        self._merge_thread = None
        self._orchestrator = None

        self.create_widgets()
        self.root.protocol("WM_DELETE_WINDOW", self._on_window_close)

    def create_widgets(self):
        """Create all UI widgets"""

        # Header
        header_frame = tk.Frame(self.root, bg='#2E86AB', height=60)
        header_frame.pack(fill=tk.X)
        header_frame.pack_propagate(False)

        tk.Label(
            header_frame,
            text="PDF Chunk Merger",
            font=('Arial', 18, 'bold'),
            bg='#2E86AB',
            fg='white'
        ).pack(pady=15)

        content_frame = tk.Frame(self.root, padx=20, pady=20)
        content_frame.pack(fill=tk.BOTH, expand=True)
        content_frame.grid_columnconfigure(0, weight=1)
        content_frame.grid_columnconfigure(1, weight=1)
        content_frame.grid_rowconfigure(9, weight=1)

        # Input selection
        input_header = tk.Frame(content_frame)
        input_header.grid(row=0, column=0, columnspan=2, sticky='ew', pady=(0, 5))
        self.files_found_label = tk.Label(input_header, text="Files selected: 0", font=('Arial', 10, 'bold'))
        self.files_found_label.pack(side=tk.LEFT)
        tk.Button(input_header, text="Clear", command=self.clear_inputs, width=8).pack(side=tk.RIGHT)
        tk.Button(input_header, text="ZIP...", command=self.browse_input_zip, width=8).pack(side=tk.RIGHT, padx=(0, 6))
        tk.Button(input_header, text="Folder...", command=self.browse_input_folder, width=8).pack(side=tk.RIGHT, padx=(0, 6))
        tk.Button(input_header, text="Files...", command=self.browse_input_files, width=8).pack(side=tk.RIGHT, padx=(0, 6))

        self.file_list = tk.Listbox(content_frame, height=8)
        self.file_list.grid(row=1, column=0, columnspan=2, sticky='ew', pady=(0, 15))

        # Output folder selection
        tk.Label(content_frame, text="Output Folder:", font=('Arial', 10, 'bold')).grid(
            row=2, column=0, sticky='w', pady=(0, 5)
        )
        output_frame = tk.Frame(content_frame)
        output_frame.grid(row=3, column=0, columnspan=2, sticky='ew', pady=(0, 15))
        tk.Entry(output_frame, textvariable=self.output_folder, width=50, state='readonly').pack(
            side=tk.LEFT, fill=tk.X, expand=True, padx=(0, 10)
        )
        tk.Button(output_frame, text="Browse...", command=self.browse_output, width=10).pack(side=tk.RIGHT)

        # Settings
        settings_frame = tk.LabelFrame(content_frame, text="Settings", padx=10, pady=10)
        settings_frame.grid(row=4, column=0, columnspan=2, sticky='ew', pady=(0, 15))

        tk.Label(settings_frame, text="Max MB per file:").grid(row=0, column=0, sticky='w', padx=(0, 10))
        tk.Spinbox(settings_frame, from_=1, to=100000, textvariable=self.limit_mb, width=10).grid(
            row=0, column=1, sticky='w'
        )

        tk.Label(settings_frame, text="Size strategy:").grid(row=0, column=2, sticky='w', padx=(20, 10))
        ttk.Combobox(
            settings_frame,
            textvariable=self.strategy_label,
            values=list(STRATEGY_LABELS),
            state='readonly',
            width=38,
        ).grid(row=0, column=3, sticky='w')

        tk.Checkbutton(
            settings_frame,
            text="Skip chunks with unreadable PDFs instead of stopping",
            variable=self.isolate_failures,
        ).grid(row=1, column=0, columnspan=2, sticky='w', pady=(6, 0))
        tk.Checkbutton(
            settings_frame,
            text="Bookmark each source file",
            variable=self.add_bookmarks,
        ).grid(row=1, column=2, columnspan=2, sticky='w', pady=(6, 0))

        tk.Label(
            settings_frame,
            text="Note: merged file sizes can differ slightly from the sum of the inputs because of PDF "
                 "structure, and a part is never smaller than its largest input file.",
            fg='#666',
            justify='left',
            wraplength=820,
        ).grid(row=2, column=0, columnspan=4, sticky='w', pady=(8, 0))

        # Buttons
        button_frame = tk.Frame(content_frame)
        button_frame.grid(row=5, column=0, columnspan=2, sticky='ew', pady=(0, 15))
        button_frame.grid_columnconfigure(0, weight=3)
        button_frame.grid_columnconfigure(1, weight=1)
        button_frame.grid_columnconfigure(2, weight=1)

        self.start_button = tk.Button(
            button_frame,
            text="Start Merging",
            command=self.start_merge,
            bg='#2E86AB',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            cursor='hand2'
        )
        self.start_button.grid(row=0, column=0, sticky='ew', padx=(0, 8))

        self.cancel_button = tk.Button(
            button_frame,
            text="Cancel",
            command=self._request_cancel,
            bg='#dc3545',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            state='disabled',
        )
        self.cancel_button.grid(row=0, column=1, sticky='ew', padx=(0, 8))

        self.reset_button = tk.Button(
            button_frame,
            text="Start Over",
            command=self.reset,
            font=('Arial', 12, 'bold'),
            height=2,
        )
        self.reset_button.grid(row=0, column=2, sticky='ew')

        self.status_label = tk.Label(content_frame, text="Status: Ready", fg='#666')
        self.status_label.grid(row=6, column=0, columnspan=2, sticky='w', pady=(0, 5))

        self.progress = ttk.Progressbar(content_frame, mode='determinate', maximum=100)
        self.progress.grid(row=7, column=0, columnspan=2, sticky='ew', pady=(0, 10))

        self.output_files_label = tk.Label(content_frame, text="Generated files: none", fg='#666', justify='left', anchor='w')
        self.output_files_label.grid(row=8, column=0, columnspan=2, sticky='ew', pady=(0, 5))

        log_frame = tk.Frame(content_frame)
        log_frame.grid(row=9, column=0, columnspan=2, sticky='nsew')
        log_frame.grid_columnconfigure(0, weight=1)
        log_frame.grid_rowconfigure(0, weight=1)
        self.log_text = tk.Text(log_frame, height=12, wrap='word', state='disabled')
        self.log_text.grid(row=0, column=0, sticky='nsew')
        log_scroll = ttk.Scrollbar(log_frame, orient='vertical', command=self.log_text.yview)
        log_scroll.grid(row=0, column=1, sticky='ns')
        self.log_text.configure(yscrollcommand=log_scroll.set)

    def _on_window_close(self):
        """Handle window close (X button). Confirm if merge is running."""
        if self.is_processing:
            if messagebox.askyesno(
                "Merge in progress",
                "A merge is currently running.\n\nCancel the merge and close?",
            ):
                self.cancel_event.set()
                if self._merge_thread is not None:
                    self._merge_thread.join(timeout=5)
                self.root.destroy()
        else:
            self.root.destroy()

    def _request_cancel(self):
        if not self.is_processing:
            return
        self.cancel_event.set()
        self.cancel_button.config(state='disabled', text='Cancelling...')
        self.status_label.config(text="Status: Cancelling...", fg='#dc3545')
        self._append_log("[INFO] Cancel requested. Waiting for the current file to finish...")

    def browse_input_files(self):
        files = filedialog.askopenfilenames(
            title="Select PDF Files",
            filetypes=[("PDF files", "*.pdf"), ("All files", "*.*")],
        )
        if files:
            self._add_inputs(list(files))

    def browse_input_folder(self):
        folder = filedialog.askdirectory(title="Select Input Folder")
        if folder:
            self._add_inputs([folder])

    def browse_input_zip(self):
        zip_file = filedialog.askopenfilename(
            title="Select ZIP File",
            filetypes=[("ZIP files", "*.zip"), ("All files", "*.*")],
        )
        if zip_file:
            self._add_inputs([zip_file])

    def _add_inputs(self, paths):
        self.status_label.config(text="Status: Scanning folders...", fg='#2E86AB')
        try:
            found = self.collector.collect(paths)
        except CollectionError as exc:
            messagebox.showerror("Error", str(exc))
            self.status_label.config(text="Status: Ready", fg='#666')
            return
        self.input_paths.extend(paths)
        self.selected_files = sequence_files(self.selected_files + found)
        if not self.output_folder.get():
            first = paths[0]
            base_dir = first if os.path.isdir(first) else os.path.dirname(first)
            self.output_folder.set(os.path.join(base_dir, "merged_output"))
        self._refresh_file_list()
        self.status_label.config(text="Status: Ready", fg='#666')

    def _refresh_file_list(self):
        self.file_list.delete(0, tk.END)
        for descriptor in self.selected_files[:_PREVIEW_LIMIT]:
            self.file_list.insert(tk.END, f"{descriptor.name}    {descriptor.size_bytes / MB:.2f} MB")
        hidden = len(self.selected_files) - _PREVIEW_LIMIT
        if hidden > 0:
            self.file_list.insert(tk.END, f"...and {hidden} more files")
        self.files_found_label.config(text=f"Files selected: {len(self.selected_files)}")

    def clear_inputs(self):
        if self.is_processing:
            return
        self.input_paths = []
        self.selected_files = []
        self._refresh_file_list()

    def browse_output(self):
        folder = filedialog.askdirectory(title="Select Output Folder")
        if folder:
            self.output_folder.set(folder)

    def _append_log(self, line):
        self.log_text.config(state='normal')
        self.log_text.insert(tk.END, line + "\n")
        line_count = int(self.log_text.index('end-1c').split('.')[0])
        if line_count > _LOG_MAX_LINES:
            self.log_text.delete('1.0', f'{_LOG_TRIM_LINES + 1}.0')
        self.log_text.see(tk.END)
        self.log_text.config(state='disabled')

    def reset(self):
        """Clear inputs, results and progress for a new run."""
        if self.is_processing:
            return
        self.clear_inputs()
        self.progress['value'] = 0
        self.status_label.config(text="Status: Ready", fg='#666')
        self.output_files_label.config(text="Generated files: none")
        self.log_text.config(state='normal')
        self.log_text.delete("1.0", tk.END)
        self.log_text.config(state='disabled')

    def on_state_update(self, state):
        try:
            self.root.after(0, self._handle_state_update, state)
        except Exception:
            pass  # Window may have been destroyed

    def _handle_state_update(self, state):
        if state.phase is RunPhase.FAILED:
            return
        self.progress['value'] = state.percent
        if state.message:
            self.status_label.config(text=f"Status: {state.message}", fg='#2E86AB')

    def on_run_event(self, payload):
        try:
            self.root.after(0, self._handle_run_event, payload)
        except Exception:
            pass  # Window may have been destroyed

    def _handle_run_event(self, payload):
        level = str(payload.get("level", "INFO")).upper()
        event = str(payload.get("event", "event"))
        message = str(payload.get("message", ""))
        self._append_log(f"[{level}] {event}: {message}")

    def start_merge(self):
        """Start the merging process"""
        if self.is_processing:
            return

        try:
            limit_mb = self.limit_mb.get()
            if limit_mb < 1:
                raise ValueError("must be >= 1")
        except (tk.TclError, ValueError):
            messagebox.showerror("Error", "Max MB per file must be a positive number.")
            return

        if not self.selected_files:
            messagebox.showerror("Error", "Please select PDF files, a folder or a ZIP file")
            return

        if not self.output_folder.get():
            messagebox.showerror("Error", "Please select an output folder")
            return

        self.is_processing = True
        self.cancel_event.clear()
        self.start_button.config(state='disabled', text='Processing...')
        self.cancel_button.config(state='normal', text='Cancel')
        self.reset_button.config(state='disabled')
        self.progress['value'] = 0
        self.status_label.config(text="Status: Processing...", fg='#2E86AB')
        self._append_log("Run started.")

        orchestrator = MergeOrchestrator(
            limit_mb=limit_mb,
            strategy=STRATEGY_LABELS.get(self.strategy_label.get(), "under"),
            failure_policy="isolate" if self.isolate_failures.get() else "abort",
            add_bookmarks=self.add_bookmarks.get(),
        )
        self._orchestrator = orchestrator
        self._merge_thread = threading.Thread(target=self.run_merge, args=(orchestrator,), daemon=True)
        self._merge_thread.start()

    def run_merge(self, orchestrator):
        """Run the merge operation (in separate thread)"""
        try:
            state = orchestrator.merge_paths(
                list(self.input_paths),
                self.output_folder.get(),
                state_callback=self.on_state_update,
                event_callback=self.on_run_event,
                cancel_event=self.cancel_event,
            )
            try:
                self.root.after(0, self.on_merge_complete, state)
            except Exception:
                pass
        except Exception as e:
            try:
                self.root.after(0, self.on_merge_error, str(e))
            except Exception:
                pass

    def _finish_processing(self):
        self.is_processing = False
        self.start_button.config(state='normal', text='Start Merging')
        self.cancel_button.config(state='disabled', text='Cancel')
        self.reset_button.config(state='normal')

    def on_merge_complete(self, state):
        """Called when merge completes successfully"""
        self._finish_processing()
        self.progress['value'] = 100
        self.status_label.config(text="Status: Done!", fg='#28a745')

        outputs, total_bytes = state.summary()
        lines = [f"{name}    {size / MB:.2f} MB" for name, size in outputs]
        lines.append(f"Total size    {total_bytes / MB:.2f} MB")
        self.output_files_label.config(text="Generated files:\n" + "\n".join(lines))
        self._append_log("Run completed.")

        failed_preview = ""
        if state.failures:
            preview_lines = [f"- chunk {item['chunk']}: {item['file']}" for item in state.failures[:5]]
            failed_preview = "\n\nSkipped chunks:\n" + "\n".join(preview_lines)

        archive_path = os.path.join(self.output_folder.get(), self._orchestrator.archive_name)
        messagebox.showinfo(
            "Success",
            f"Your PDFs are ready!\n\n"
            f"Input files: {len(self.selected_files)}\n"
            f"Generated files: {len(outputs)}\n"
            f"Total size: {total_bytes / MB:.2f} MB\n\n"
            f"ZIP archive:\n{archive_path}"
            f"{failed_preview}"
        )

        if messagebox.askyesno("Open Folder", "Would you like to open the output folder?"):
            folder_path = self.output_folder.get()
            try:
                if platform.system() == 'Windows':
                    os.startfile(folder_path)
                elif platform.system() == 'Darwin':  # macOS
                    subprocess.run(['open', folder_path], check=True)
                else:
                    subprocess.run(['xdg-open', folder_path], check=True)
            except (OSError, FileNotFoundError, subprocess.CalledProcessError):
                messagebox.showwarning("Cannot Open Folder",
                                       f"Output saved to:\n{folder_path}\n\n"
                                       f"Please open manually.")

    def on_merge_error(self, error_msg):
        """Called when merge fails or is cancelled"""
        self._finish_processing()
        was_cancelled = self.cancel_event.is_set()
        self.status_label.config(text="Status: Cancelled" if was_cancelled else "Status: Error", fg='#dc3545')
        self._append_log(f"[ERROR] {error_msg}")
        if was_cancelled:
            return

        display_msg = error_msg if len(error_msg) <= 1000 else error_msg[:1000] + "\n\n... (truncated, see run log for full error)"
        messagebox.showerror("Error", f"An error occurred during merging:\n\n{display_msg}")


def main():
    """Main entry point"""
    root = tk.Tk()
    ChunkMergerGUI(root)
    root.mainloop()


if __name__ == "__main__":
    main()
