import queue
import tkinter as tk
from tkinter import filedialog, messagebox
from PIL import ImageTk
from pathlib import Path
from pcxdecoder import PCXError, DecodeProgress, decode_background, describe_header, read_header

# ==== Style ====
BG_MAIN = "#f0f2f5"
BG_TOOLBAR = "#2f3e4e"
BG_PANEL = "#ffffff"
BG_BUTTON = "#4a6a8a"
FG_BUTTON = "#ffffff"
FG_TEXT = "#222222"
FG_SUBTEXT = "#555555"
FONT_HEADER = ("Segoe UI", 11, "bold")
FONT_TEXT = ("Segoe UI", 10)
FONT_MONO = ("Consolas", 9)

POLL_MS = 20


# ==== PCX Viewer ====
class PCXViewer(tk.Frame):
    def __init__(self, master, file_path=None):
        super().__init__(master, bg=BG_MAIN)
        self.master = master
        self.pack(fill="both", expand=True)

        # Toolbar
        toolbar = tk.Frame(self, bg=BG_TOOLBAR, padx=10, pady=8)
        toolbar.pack(side="top", fill="x")
        for text, command in (("Open PCX", self.open_pcx), ("Zoom In", self.zoom_in), ("Zoom Out", self.zoom_out)):
            tk.Button(toolbar, text=text, command=command,
                      bg=BG_BUTTON, fg=FG_BUTTON,
                      font=("Segoe UI", 10, "bold"), relief="flat", padx=10, pady=4).pack(side="left", padx=5)
        self.status = tk.Label(toolbar, text="", bg=BG_TOOLBAR, fg=FG_BUTTON, font=FONT_TEXT)
        self.status.pack(side="right", padx=5)

        # Main Frame
        main_frame = tk.Frame(self, bg=BG_MAIN)
        main_frame.pack(fill="both", expand=True, padx=10, pady=10)

        # Canvas frame
        canvas_frame = tk.Frame(main_frame, bg=BG_MAIN)
        canvas_frame.pack(side="left", fill="both", expand=True, padx=(0, 10))
        self.canvas = tk.Canvas(canvas_frame, bg=BG_PANEL, cursor="cross")
        self.canvas.pack(side="left", fill="both", expand=True)
        self.scroll_y = tk.Scrollbar(canvas_frame, orient="vertical", command=self.canvas.yview)
        self.scroll_y.pack(side="right", fill="y")
        self.scroll_x = tk.Scrollbar(main_frame, orient="horizontal", command=self.canvas.xview)
        self.scroll_x.pack(side="bottom", fill="x")
        self.canvas.configure(yscrollcommand=self.scroll_y.set, xscrollcommand=self.scroll_x.set)

        self.canvas.bind("<Button-1>", self.get_pixel_info)
        self.canvas.bind("<MouseWheel>", self.on_mousewheel)
        self.canvas.bind("<Button-4>", self.on_mousewheel_linux)
        self.canvas.bind("<Button-5>", self.on_mousewheel_linux)

        # Info Panel
        info_frame = tk.Frame(main_frame, bg=BG_PANEL, bd=2, relief="groove", padx=15, pady=15)
        info_frame.pack(side="right", fill="y")
        tk.Label(info_frame, text="Pixel Info", font=FONT_HEADER,
                 bg=BG_PANEL, fg=FG_TEXT).pack(anchor="w", pady=(0, 5))
        self.pixel_label = tk.Label(info_frame,
            text="Click on the image to view pixel RGBA values.",
            font=FONT_TEXT, justify="left", bg=BG_PANEL, fg=FG_SUBTEXT)
        self.pixel_label.pack(anchor="w", pady=(0, 10))
        self.color_preview = tk.Canvas(info_frame, width=80, height=50, bg="#cccccc", bd=1, relief="solid")
        self.color_preview.pack(anchor="w", pady=(0, 20))
        tk.Frame(info_frame, height=2, bg="#e0e0e0").pack(fill="x", pady=10)
        tk.Label(info_frame, text="Header Info", font=FONT_HEADER,
                 bg=BG_PANEL, fg=FG_TEXT).pack(anchor="w", pady=(0, 5))
        self.header_text = tk.Text(info_frame, height=12, width=36,
                                   font=FONT_MONO, bg="#f9f9f9", fg="#222",
                                   relief="flat", wrap="none")
        self.header_text.pack(anchor="w", pady=(0, 5))
        self.header_text.configure(state="disabled")
        tk.Label(info_frame, text="Color Palette", font=FONT_HEADER,
                 bg=BG_PANEL, fg=FG_TEXT).pack(anchor="w", pady=(10, 5))
        self.palette_canvas = tk.Canvas(info_frame, width=256, height=128, bg="#fff", bd=1, relief="solid")
        self.palette_canvas.pack(anchor="w")

        # Vars
        self.buffer = None
        self.image = None
        self.tk_img = None
        self.zoom_factor = 1.0
        self.task = None
        self.fp = None
        self.poll_id = None

        if file_path:
            self.load_pcx(file_path)

    # ==== File Handling ====
    def open_pcx(self):
        file_path = filedialog.askopenfilename(filetypes=[("PCX files", "*.pcx")])
        if file_path:
            self.load_pcx(file_path)

    def load_pcx(self, file_path):
        if self.task is not None and not self.task.done:
            messagebox.showinfo("Busy", "Still decoding the previous image.")
            return
        path = Path(file_path)
        try:
            self.fp = open(path, "rb")
            header = read_header(self.fp)
        except (OSError, PCXError) as e:
            self._close()
            messagebox.showerror("Error", f"Failed to open PCX file:\n{e}")
            return

        self.show_header_info(describe_header(header, path))
        self.palette_canvas.delete("all")
        self.task = decode_background(header, self.fp)
        self.poll_id = self.after(POLL_MS, self.poll_decoder)

    def poll_decoder(self):
        self.poll_id = None
        try:
            while True:
                message = self.task.messages.get_nowait()
                if self.on_progress(message):
                    return
        except queue.Empty:
            self.poll_id = self.after(POLL_MS, self.poll_decoder)

    def on_progress(self, message: DecodeProgress) -> bool:
        """Handle one message from the decode task; True once decoding is over."""
        self.status.config(text=f"Loading - {message.percent} %")
        self.master.title(f"PCX Viewer - Loading - {message.percent} %")
        if message.error is not None:
            self._close()
            self.status.config(text="Failed")
            messagebox.showerror("Error", f"Failed to decode PCX file:\n{message.error}")
            return True
        if message.image is not None:
            self._close()
            self.buffer = message.image
            self.image = self.buffer.to_pil()
            self.zoom_factor = 1.0
            self.status.config(text=f"{self.image.width} × {self.image.height}")
            self.master.title("PCX Viewer")
            self.display_image()
            self.draw_palette(self.task.palette)
            return True
        return False

    def _close(self):
        if self.fp is not None:
            self.fp.close()
            self.fp = None

    def destroy(self):
        if self.poll_id is not None:
            self.after_cancel(self.poll_id)
            self.poll_id = None
        self._close()
        super().destroy()

    # ==== Display & Zoom ====
    def display_image(self):
        if self.image:
            w = max(1, int(self.image.width * self.zoom_factor))
            h = max(1, int(self.image.height * self.zoom_factor))
            img_resized = self.image.resize((w, h))
            self.tk_img = ImageTk.PhotoImage(img_resized)
            self.canvas.delete("all")
            self.canvas.create_image(0, 0, anchor="nw", image=self.tk_img)
            self.canvas.config(scrollregion=self.canvas.bbox("all"))

    def zoom_in(self): self.zoom_factor *= 1.25; self.display_image()
    def zoom_out(self): self.zoom_factor /= 1.25; self.display_image()
    def on_mousewheel(self, event): self.zoom_in() if event.delta > 0 else self.zoom_out()
    def on_mousewheel_linux(self, event):
        if event.num == 4: self.zoom_in()
        elif event.num == 5: self.zoom_out()

    # ==== Pixel info ====
    def get_pixel_info(self, event):
        if self.buffer is not None:
            x = int(self.canvas.canvasx(event.x) / self.zoom_factor)
            y = int(self.canvas.canvasy(event.y) / self.zoom_factor)
            if 0 <= x < self.buffer.width and 0 <= y < self.buffer.height:
                r, g, b, a = self.buffer[x, y]
                self.pixel_label.config(text=f"X:{x}\nY:{y}\nR:{r}\nG:{g}\nB:{b}\nA:{a}")
                self.color_preview.config(bg=f"#{r:02x}{g:02x}{b:02x}")

    # ==== Header info ====
    def show_header_info(self, info):
        text = "\n".join(f"{k}: {v}" for k, v in info.items())
        self.header_text.configure(state="normal")
        self.header_text.delete("1.0", "end")
        self.header_text.insert("1.0", text)
        self.header_text.configure(state="disabled")

    # ==== Palette ====
    def draw_palette(self, palette):
        self.palette_canvas.delete("all")
        if not palette: return
        PAD = 2; cols = 16; cell = 16
        total = min(256, len(palette))
        rows = (total + cols - 1) // cols
        self.palette_canvas.config(width=cols * cell + PAD * 2, height=rows * cell + PAD * 2)
        for i, (r, g, b) in enumerate(palette[:total]):
            col = i % cols; row = i // cols
            x = PAD + col * cell; y = PAD + row * cell
            self.palette_canvas.create_rectangle(x, y, x + cell, y + cell, fill=f"#{r:02x}{g:02x}{b:02x}", outline="")


# ==== Main ====
if __name__ == "__main__":
    root = tk.Tk()
    root.title("PCX Viewer")
    root.geometry("1200x800")
    app = PCXViewer(root)
    root.mainloop()
