# helpers/logger.py
import csv, json, datetime, pathlib

import matplotlib.pyplot as plt


class RunLogger:
    def __init__(self, root="runs", tag="run"):
        ts = datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
        self.root = pathlib.Path(root)
        self.dir = self.root / f"{tag}_{ts}"
        self.dir.mkdir(parents=True, exist_ok=True)
        self.csv_path = self.dir / "history.csv"
        self.json_path = self.dir / "history.json"
        self.metrics = []  # list of dicts per logged iteration
        self._csv_header_written = False

    # ---------- logging ----------
    def log_iteration(self, iteration, **kwargs):
        row = {"iteration": int(iteration), **{k: float(v) for k, v in kwargs.items()}}
        self.metrics.append(row)
        with open(self.csv_path, "a", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=list(row.keys()))
            if not self._csv_header_written:
                writer.writeheader()
                self._csv_header_written = True
            writer.writerow(row)

    def save_json(self):
        with open(self.json_path, "w") as f:
            json.dump(self.metrics, f, indent=2)

    def history(self):
        """Column view of the logged rows: {'iteration': [...], 'loss': [...], ...}."""
        columns = {}
        for row in self.metrics:
            for k, v in row.items():
                columns.setdefault(k, []).append(v)
        return columns

    # ---------- plotting ----------
    def _plots_dir(self, subdir):
        out = self.dir / subdir
        out.mkdir(parents=True, exist_ok=True)
        return out

    def plot_curve(self, history, key, ylabel, tag="run", subdir="plots"):
        """Saves <key>_curve_<tag>.png against the logged iterations."""
        values = history.get(key, [])
        if len(values) == 0:
            return None
        outdir = self._plots_dir(subdir)
        path = outdir / f"{key}_curve_{tag}.png"
        plt.figure()
        plt.plot(history.get("iteration", range(len(values))), values, label=key)
        plt.xlabel("Iteration")
        plt.ylabel(ylabel)
        plt.title(f"{ylabel} vs Iterations ({tag})")
        plt.legend()
        plt.tight_layout()
        plt.savefig(path, dpi=160)
        plt.close()
        return path

    def plot_all(self, tag="run", subdir="plots"):
        """
        Convenience: generate all standard plots we know how to draw.
        """
        history = self.history()
        self.plot_curve(history, "loss", "Cross-Entropy Loss", tag=tag, subdir=subdir)
        self.plot_curve(history, "lr", "Learning Rate", tag=tag, subdir=subdir)

    def save_test_summary(self, error_rate, confusion, tag="run", filename="test_summary.json"):
        summary = {
            "experiment_tag": tag,
            "timestamp": datetime.datetime.now().isoformat(),
            "error_rate": float(error_rate),
            "confusion_matrix": confusion.tolist(),
        }
        output_path = self.dir / filename
        with open(output_path, "w") as f:
            json.dump(summary, f, indent=2)
        return str(output_path)
