"""
Report Document Assembler

Builds the two exports of a report from the same ReportModel:

- a self-contained interactive HTML page (editable table, live chart,
  simulation canvas with controls, analysis, Q&A), and
- a static A4 PDF where analysis placeholders read [calculated].

Both go through report_sections() so their text never diverges.
"""

import html
import io
import json
from dataclasses import dataclass
from typing import List, Optional, Tuple
from xml.sax.saxutils import escape as xml_escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import ListFlowable, ListItem, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from engine.calc_script import number_to_string
from engine.calculator import Calculator
from engine.chart_renderer import ChartRenderer
from engine.report_schema import ReportModel
from engine.simulation_engine import CIRCUIT_FLOW_THRESHOLD, params_for
from engine.template_engine import ANALYSIS_FALLBACK, AnalysisView, render_static_analysis


@dataclass(frozen=True)
class Section:
    key: str
    heading: str
    kind: str  # bullets | steps | text | qa
    items: Tuple = ()
    text: str = ""


def report_sections(model: ReportModel) -> List[Section]:
    """The static text sections, in document order."""
    sections = [
        Section("objectives", "Objectives", "bullets", items=tuple(model.objectives)),
        Section("apparatus", "Apparatus", "bullets", items=tuple(model.apparatus)),
        Section("theory", "Theory", "text", text=model.theory),
        Section("procedure", "Procedure", "steps", items=tuple(model.procedure)),
    ]
    if model.questions:
        sections.append(Section(
            "questions", "Questions & Answers", "qa",
            items=tuple((q.question, q.answer) for q in model.questions),
        ))
    sections.append(Section("discussion", "Discussion", "text", text=model.discussion))
    sections.append(Section("conclusion", "Conclusion", "text", text=model.conclusion))
    return sections


def interactive_filename(experiment_code: str) -> str:
    return f"{experiment_code}_Interactive_Report.html"


def pdf_filename(experiment_code: str) -> str:
    return f"{experiment_code}_Report.pdf"


def _script_json(value) -> str:
    # Keeps "</script>" inside AI text from closing the script element
    return json.dumps(value).replace("</", "<\\/")


# ---------------------------------------------------------------------------
# Interactive HTML
# ---------------------------------------------------------------------------

STYLE = """
body { font-family: 'Inter', sans-serif; background-color: #0f172a; color: #f8fafc; overflow-x: hidden; }
.glass { background: rgba(30, 41, 59, 0.7); backdrop-filter: blur(12px); border: 1px solid rgba(255, 255, 255, 0.1); box-shadow: 0 4px 30px rgba(0, 0, 0, 0.1); }
input[type=range] { -webkit-appearance: none; width: 100%; background: transparent; }
input[type=range]::-webkit-slider-thumb { -webkit-appearance: none; height: 16px; width: 16px; border-radius: 50%; background: #38bdf8; cursor: pointer; margin-top: -6px; }
input[type=range]::-webkit-slider-runnable-track { width: 100%; height: 4px; background: rgba(255,255,255,0.2); border-radius: 2px; }
.calc-value { color: #67e8f9; font-weight: 700; }
.calc-error { color: #f87171; }
canvas { max-width: 100%; }
"""

OFFLINE_CSP = (
    "connect-src 'none'; worker-src blob:; "
    "script-src 'unsafe-inline' 'unsafe-eval' blob: https://cdn.tailwindcss.com https://cdn.jsdelivr.net"
)

RUNTIME = r"""
const NUMBER_RE = /^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$/;
const tableBody = document.getElementById('dataTableBody');
const analysisDiv = document.getElementById('analysisContent');
const analysisNote = document.getElementById('analysisNote');
let chartInstance = null;

// --- table ---
function markCell(input, valid) {
  input.classList.remove('border-white/10');
  input.classList.toggle('border-red-500/50', !valid);
  input.classList.toggle('text-red-300', !valid);
  input.classList.toggle('border-green-500/50', valid);
  input.classList.toggle('text-green-300', valid);
}

function renderTable() {
  tableBody.innerHTML = '';
  REPORT.tableData.forEach((row, r) => {
    const tr = document.createElement('tr');
    tr.className = 'border-b border-white/5 hover:bg-white/5 transition';
    row.forEach((cell, c) => {
      const td = document.createElement('td');
      td.className = 'p-1';
      const input = document.createElement('input');
      input.type = 'text';
      input.inputMode = 'decimal';
      input.value = String(cell);
      input.className = 'w-full bg-transparent p-2 text-right font-mono text-sm border rounded outline-none transition-colors border-white/10 focus:bg-white/5';
      input.oninput = () => markCell(input, NUMBER_RE.test(input.value.trim()));
      input.onchange = () => commitCell(input, r, c);
      td.appendChild(input);
      tr.appendChild(td);
    });
    tableBody.appendChild(tr);
  });
}

function commitCell(input, r, c) {
  const text = input.value.trim();
  if (!NUMBER_RE.test(text)) {
    // Rejected: the table keeps its previous value
    markCell(input, false);
    return;
  }
  REPORT.tableData[r][c] = parseFloat(text);
  updateChart();
  pushChange('cells', { row: r, col: c, value: text });
}

function addRow() {
  REPORT.tableData.push(new Array(REPORT.tableHeaders.length).fill(0));
  renderTable();
  updateChart();
  pushChange('rows', {});
}

// --- analysis ---
function showNote(text) {
  analysisNote.textContent = text;
  analysisNote.classList.remove('hidden');
}

function pushChange(path, body) {
  if (!LIVE_ENDPOINT) {
    recalculateOffline();
    return;
  }
  fetch(LIVE_ENDPOINT + '/' + path, {
    method: 'POST',
    credentials: 'same-origin',
    headers: { 'Content-Type': 'application/json' },
    body: JSON.stringify(body)
  })
    .then(res => res.json().then(data => ({ ok: res.ok, data })))
    .then(({ ok, data }) => {
      if (ok && data.analysis) {
        analysisDiv.innerHTML = data.analysis.html;
        analysisNote.classList.add('hidden');
      } else {
        showNote(data.error || FALLBACK);
      }
    })
    .catch(() => showNote('Live session unavailable. Reopen the report to recalculate.'));
}

// --- offline recalculation ---
// A downloaded copy has no server, so the calculation script runs in a
// throwaway Worker under the page's CSP and is killed after CALC_TIMEOUT_MS.
// Only the newest edit's result is shown.
const CALC_TIMEOUT_MS = 1000;
const SHADOWED = ['self', 'globalThis', 'postMessage', 'onmessage', 'close', 'importScripts', 'fetch',
  'XMLHttpRequest', 'WebSocket', 'EventSource', 'indexedDB', 'caches', 'setTimeout', 'setInterval', 'Worker'];
let calcWorker = null;
let calcTimer = null;

function escapeHtml(text, quotes) {
  let out = String(text).replace(/&/g, '&amp;').replace(/</g, '&lt;').replace(/>/g, '&gt;');
  if (quotes) out = out.replace(/"/g, '&quot;').replace(/'/g, '&#x27;');
  return out;
}

function formatValue(v) {
  return typeof v === 'number' ? v.toFixed(4) : String(v);
}

function renderAnalysis(results) {
  return escapeHtml(REPORT.analysisTemplate, false)
    .replace(/\{\{(.*?)\}\}/g, (match, name) => Object.prototype.hasOwnProperty.call(results, name)
      ? '<span class="calc-value">' + escapeHtml(formatValue(results[name]), true) + '</span>'
      : match)
    .replace(/\n/g, '<br>');
}

function workerSource() {
  return [
    'const SHADOWED = ' + JSON.stringify(SHADOWED) + ';',
    'const SCRIPT = ' + JSON.stringify(REPORT.calculationScript) + ';',
    'const reply = self.postMessage.bind(self);',
    'self.onmessage = event => {',
    '  try {',
    '    const fn = new Function("rows", ...SHADOWED, "\\"use strict\\";\\n" + SCRIPT);',
    '    const out = fn(event.data);',
    '    if (out === null || typeof out !== "object" || Array.isArray(out)) throw new Error("not an object");',
    '    const results = {};',
    '    for (const key of Object.keys(out)) {',
    '      const v = out[key];',
    '      results[key] = (typeof v === "number" || typeof v === "string" || typeof v === "boolean") ? v : String(v);',
    '    }',
    '    reply({ ok: true, results });',
    '  } catch (err) {',
    '    reply({ ok: false });',
    '  }',
    '};'
  ].join('\n');
}

function stopCalculation() {
  if (calcTimer !== null) {
    clearTimeout(calcTimer);
    calcTimer = null;
  }
  if (calcWorker !== null) {
    calcWorker.terminate();
    calcWorker = null;
  }
}

function showAnalysisFallback() {
  analysisDiv.innerHTML = '<span class="calc-error">' + escapeHtml(FALLBACK, false) + '</span>';
}

function recalculateOffline() {
  stopCalculation();
  let worker;
  try {
    const url = URL.createObjectURL(new Blob([workerSource()], { type: 'text/javascript' }));
    worker = new Worker(url);
    URL.revokeObjectURL(url);
  } catch (err) {
    showNote('Offline copy: this browser cannot recalculate here, the analysis shows values calculated when this report was exported.');
    return;
  }
  calcWorker = worker;
  worker.onmessage = event => {
    if (calcWorker !== worker) return;
    stopCalculation();
    if (event.data.ok) {
      analysisDiv.innerHTML = renderAnalysis(event.data.results);
      analysisNote.classList.add('hidden');
    } else {
      showAnalysisFallback();
    }
  };
  worker.onerror = () => {
    if (calcWorker !== worker) return;
    stopCalculation();
    showAnalysisFallback();
  };
  calcTimer = setTimeout(() => {
    if (calcWorker !== worker) return;
    stopCalculation();
    showAnalysisFallback();
  }, CALC_TIMEOUT_MS);
  worker.postMessage(REPORT.tableData);
}

// --- chart ---
function chartData() {
  const g = REPORT.graphConfig;
  return REPORT.tableData.map(row => ({ x: row[g.xColumnIndex], y: row[g.yColumnIndex] }));
}

function initChart() {
  const el = document.getElementById('dataChart');
  if (!REPORT.graphConfig || !el || typeof Chart === 'undefined') return;
  chartInstance = new Chart(el.getContext('2d'), {
    type: 'scatter',
    data: {
      datasets: [{
        label: CHART.label,
        data: chartData(),
        backgroundColor: '#f472b6',
        borderColor: '#f472b6',
        showLine: true,
        tension: 0.1
      }]
    },
    options: {
      responsive: true,
      maintainAspectRatio: false,
      scales: {
        x: { title: { display: true, text: CHART.xLabel, color: '#94a3b8' }, grid: { color: 'rgba(255,255,255,0.1)' }, ticks: { color: '#cbd5e1' } },
        y: { title: { display: true, text: CHART.yLabel, color: '#94a3b8' }, grid: { color: 'rgba(255,255,255,0.1)' }, ticks: { color: '#cbd5e1' } }
      },
      plugins: { legend: { labels: { color: '#cbd5e1' } } }
    }
  });
}

function updateChart() {
  if (!chartInstance) return;
  // Same chart instance, new points
  chartInstance.data.datasets[0].data = chartData();
  chartInstance.update('none');
}

// --- simulation ---
const simCanvas = document.getElementById('simCanvas');
const ctx = simCanvas.getContext('2d');

function circle(x, y, r, color) {
  ctx.fillStyle = color;
  ctx.beginPath();
  ctx.arc(x, y, r, 0, Math.PI * 2);
  ctx.fill();
}

function label(text, x, y, font) {
  ctx.fillStyle = '#fff';
  ctx.font = font || '12px monospace';
  ctx.fillText(text, x, y);
}

const MODELS = {
  pendulum(s) {
    const len = s.p('length'), g = s.p('gravity');
    const speedFactor = Math.sqrt(g) / Math.sqrt(len) * 2;
    const angle = Math.sin(s.frame * 0.05 * speedFactor) * 0.5;
    const x = 400 + Math.sin(angle) * len, y = Math.cos(angle) * len;
    ctx.strokeStyle = '#94a3b8';
    ctx.lineWidth = 2;
    ctx.beginPath(); ctx.moveTo(400, 0); ctx.lineTo(x, y); ctx.stroke();
    circle(x, y, 15, '#38bdf8');
    label(`L: ${len}cm, g: ${g}m/s²`, 10, 290);
  },
  heating(s) {
    const heat = s.p('heat'), ambient = s.p('ambient');
    ctx.fillStyle = 'rgba(255,255,255,0.1)';
    ctx.strokeStyle = '#fff';
    ctx.fillRect(350, 150, 100, 120);
    ctx.strokeRect(350, 150, 100, 120);
    ctx.fillStyle = 'rgba(6, 182, 212, 0.5)';
    ctx.fillRect(355, 180, 90, 85);
    if (s.active) {
      const count = Math.floor(heat / 10) + 1, speed = 1 + heat / 20;
      for (let i = 0; i < count; i++) {
        const bx = 360 + ((s.frame * (i + 1) * 10 + i * 20) % 80);
        const by = 260 - ((s.frame * speed + i * 30) % 80);
        circle(bx, by, 2 + heat / 30, 'rgba(255,255,255,0.6)');
      }
    }
    if (s.active && heat > 0) {
      const flicker = Math.abs(Math.sin(s.frame * 12.9898)) * 5;
      ctx.fillStyle = '#f59e0b';
      ctx.beginPath(); ctx.moveTo(380, 300); ctx.lineTo(400, 300 - heat / 2 - flicker); ctx.lineTo(420, 300); ctx.fill();
    }
    let temp = Math.min(100, ambient + s.frame * 0.1 * (heat / 50));
    if (s.peakTemp !== null) temp = Math.max(temp, s.peakTemp);
    s.peakTemp = temp;
    label(`Temp: ${temp.toFixed(1)}°C`, 10, 290);
  },
  spring(s) {
    const mass = s.p('mass'), k = s.p('k');
    const extension = (mass * 9.8) / k;
    const omega = Math.sqrt(k / (mass / 100));
    const y = 50 + extension * 2 + (s.active ? Math.sin(s.frame * 0.05 * omega) * 20 : 0);
    ctx.strokeStyle = '#cbd5e1';
    ctx.lineWidth = 4;
    ctx.beginPath(); ctx.moveTo(400, 0);
    for (let i = 0; i <= 10; i++) ctx.lineTo(400 + (i % 2 === 0 ? 10 : -10), i * y / 10);
    ctx.stroke();
    const size = 20 + mass / 5;
    ctx.fillStyle = '#f472b6';
    ctx.fillRect(400 - size / 2, y, size, size);
    label(`Ext: ${extension.toFixed(1)}mm`, 10, 290);
  },
  circuit(s) {
    const current = s.p('voltage') / s.p('resistance'), speed = current * 20;
    ctx.strokeStyle = '#facc15';
    ctx.lineWidth = 4;
    ctx.strokeRect(250, 100, 300, 150);
    ctx.fillStyle = '#ef4444'; ctx.fillRect(230, 160, 10, 30);
    ctx.fillStyle = '#22c55e'; ctx.fillRect(260, 150, 10, 50);
    ctx.fillStyle = '#94a3b8'; ctx.fillRect(540, 160, 20, 30);
    if (s.active && speed > SIM.flowThreshold) {
      const pos = (s.frame * speed) % 900;
      let ex, ey;
      if (pos < 300) { ex = 250 + pos; ey = 100; }
      else if (pos < 450) { ex = 550; ey = 100 + (pos - 300); }
      else if (pos < 750) { ex = 550 - (pos - 450); ey = 250; }
      else { ex = 250; ey = 250 - (pos - 750); }
      circle(ex, ey, 6, '#38bdf8');
    }
    label(`I = ${current.toFixed(3)} A`, 10, 290);
  },
  wave(s) {
    const freq = s.p('frequency'), amp = s.p('amplitude');
    ctx.strokeStyle = '#818cf8';
    ctx.lineWidth = 3;
    ctx.beginPath();
    for (let x = 0; x < 800; x += 5) {
      const y = 150 + Math.sin(x * 0.01 * freq + s.frame * 0.05 * freq) * amp;
      if (x === 0) ctx.moveTo(x, y); else ctx.lineTo(x, y);
    }
    ctx.stroke();
  },
  general(s) {
    const speed = s.p('speed');
    label('Standard Laboratory Environment', 280, 150, '20px Inter');
    for (let i = 0; i < 10; i++) {
      const x = (s.frame * speed * (i + 1)) % 800;
      const y = Math.sin(s.frame * 0.01 * speed + i) * 100 + 150;
      circle(x, y, 2 + i % 3, 'rgba(255,255,255,0.2)');
    }
  }
};
const drawModel = MODELS[SIM.type] || MODELS.general;

const simulation = {
  active: false,
  frame: 0,
  handle: null,
  peakTemp: null,
  params: Object.assign({}, SIM.params),

  p(id) {
    const v = this.params[id];
    return (v === undefined || v === null || Number.isNaN(v)) ? SIM.params[id] : v;
  },

  toggle() {
    this.active = !this.active;
    document.getElementById('simOverlay').style.opacity = this.active ? 0 : 1;
    document.getElementById('simBtn').innerText = this.active ? 'Pause' : 'Resume';
    if (this.active) this.schedule(); else this.stop();
    this.draw();
  },

  schedule() {
    if (this.active && this.handle === null) {
      this.handle = requestAnimationFrame(() => this.loop());
    }
  },

  loop() {
    this.handle = null;
    if (!this.active) return;
    this.frame++;
    this.draw();
    this.schedule();
  },

  stop() {
    if (this.handle !== null) {
      cancelAnimationFrame(this.handle);
      this.handle = null;
    }
  },

  setParam(id, value) {
    const control = SIM.controls.find(c => c.id === id);
    if (!control || Number.isNaN(value)) return;
    const v = Math.min(control.max, Math.max(control.min, value));
    this.params[id] = v;
    document.getElementById('val-' + id).innerText = v + ' ' + control.unit;
    this.draw();
  },

  draw() {
    ctx.clearRect(0, 0, 800, 300);
    ctx.save();
    ctx.fillStyle = '#1e293b';
    ctx.fillRect(0, 0, 800, 300);
    drawModel(this);
    ctx.restore();
  }
};

document.querySelectorAll('[data-param]').forEach(el => {
  el.addEventListener('input', () => simulation.setParam(el.dataset.param, parseFloat(el.value)));
});
window.addEventListener('pagehide', () => {
  simulation.active = false;
  simulation.stop();
});

renderTable();
initChart();
simulation.draw();
"""


def _section_html(section: Section) -> str:
    heading = f'<h2 class="text-xl font-semibold text-blue-400 border-b border-white/10 pb-2">{html.escape(section.heading)}</h2>'
    if section.kind == "bullets":
        items = "".join(f"<li>{html.escape(item)}</li>" for item in section.items)
        body = f'<ul class="list-disc list-inside text-slate-300 space-y-1">{items}</ul>'
    elif section.kind == "steps":
        items = "".join(f"<li>{html.escape(item)}</li>" for item in section.items)
        body = f'<ol class="list-decimal list-inside text-slate-300 space-y-2 text-sm">{items}</ol>'
    elif section.kind == "qa":
        body = "".join(
            f'<div class="bg-white/5 p-4 rounded-xl mb-3">'
            f'<p class="font-bold text-slate-200 text-sm mb-1">Q{i}: {html.escape(question)}</p>'
            f'<p class="text-slate-400 text-sm pl-4 border-l border-white/20">{html.escape(answer)}</p></div>'
            for i, (question, answer) in enumerate(section.items, start=1)
        )
    else:
        body = f'<p class="text-slate-300 text-sm leading-relaxed">{html.escape(section.text)}</p>'
    return f'<section class="glass rounded-2xl p-6 space-y-4" id="section-{section.key}">{heading}{body}</section>'


def _controls_html(simulation_type: str) -> str:
    rows = []
    for p in params_for(simulation_type):
        rows.append(f"""
          <div>
            <div class="flex justify-between text-xs text-slate-300 mb-1">
              <label for="ctrl-{p.id}">{html.escape(p.label)}</label>
              <span id="val-{p.id}">{number_to_string(p.initial)} {html.escape(p.unit)}</span>
            </div>
            <input type="range" id="ctrl-{p.id}" data-param="{p.id}" min="{number_to_string(p.min)}" max="{number_to_string(p.max)}" step="{number_to_string(p.step)}" value="{number_to_string(p.initial)}">
          </div>""")
    return "".join(rows)


def _initial_analysis_html(model: ReportModel) -> str:
    view = AnalysisView(model.analysis_template, Calculator(model.calculation_script))
    view.refresh(model.table_data)
    return view.html


def build_interactive_html(model: ReportModel, experiment_code: str,
                           analysis_html: Optional[str] = None,
                           live_endpoint: Optional[str] = None) -> str:
    """
    Assemble the interactive report page.

    Args:
        model: validated report
        experiment_code: shown in the header and the page title
        analysis_html: current analysis markup; evaluated from the model's own
            table when omitted
        live_endpoint: base URL of the live session API. When set, table edits
            are posted there and the analysis is replaced with the server's
            recalculation. Without it the page is an offline copy that reruns
            the calculation script in a sandboxed browser Worker.
    """
    if analysis_html is None:
        analysis_html = _initial_analysis_html(model)
    code = html.escape(experiment_code)
    sections = {s.key: s for s in report_sections(model)}
    chart = ChartRenderer(model.graph_config, model.table_headers).series
    controls = params_for(model.simulation_type)

    head = (
        "const REPORT = " + _script_json({
            "tableHeaders": model.table_headers,
            "tableData": model.table_data,
            "graphConfig": model.graph_config.model_dump(by_alias=True) if model.graph_config else None,
            "calculationScript": model.calculation_script,
            "analysisTemplate": model.analysis_template,
        }) + ";\n"
        "const CHART = " + _script_json(chart.to_dict() if chart else None) + ";\n"
        "const SIM = " + _script_json({
            "type": model.simulation_type,
            "params": {p.id: p.initial for p in controls},
            "controls": [{"id": p.id, "min": p.min, "max": p.max, "unit": p.unit} for p in controls],
            "flowThreshold": CIRCUIT_FLOW_THRESHOLD,
        }) + ";\n"
        "const LIVE_ENDPOINT = " + _script_json(live_endpoint) + ";\n"
        "const FALLBACK = " + _script_json(ANALYSIS_FALLBACK) + ";\n"
    )

    header_cells = "".join(f'<th class="px-4 py-3">{html.escape(h)}</th>' for h in model.table_headers)
    chart_section = ""
    if model.graph_config is not None:
        chart_section = f"""
      <section class="glass rounded-2xl p-6">
        <h2 class="text-xl font-semibold text-pink-400 mb-4">{html.escape(model.graph_config.title or "Live Analysis Graph")}</h2>
        <div class="relative h-[300px] w-full"><canvas id="dataChart"></canvas></div>
      </section>"""
    questions = _section_html(sections["questions"]) if "questions" in sections else ""
    # Offline copies run the calculation script in the browser; keep it off the network
    csp = "" if live_endpoint else f'\n<meta http-equiv="Content-Security-Policy" content="{OFFLINE_CSP}">'

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">{csp}
<title>{code} - Galvaniy Labs Report</title>
<script src="https://cdn.tailwindcss.com"></script>
<script src="https://cdn.jsdelivr.net/npm/chart.js"></script>
<link href="https://fonts.googleapis.com/css2?family=Inter:wght@300;400;600;700&display=swap" rel="stylesheet">
<style>{STYLE}</style>
</head>
<body class="min-h-screen p-4 md:p-8">
<div class="max-w-5xl mx-auto space-y-8" id="main-content">
  <header class="glass rounded-2xl p-8 text-center">
    <h1 class="text-4xl font-bold text-transparent bg-clip-text bg-gradient-to-r from-blue-400 to-cyan-300">{html.escape(model.title)}</h1>
    <p class="text-slate-400 mt-2">Experiment Code: <span class="text-white font-mono">{code}</span></p>
  </header>

  <div class="grid grid-cols-1 md:grid-cols-2 gap-8">
    <div class="space-y-8">{_section_html(sections["objectives"])}{_section_html(sections["theory"])}</div>
    <div class="space-y-8">{_section_html(sections["apparatus"])}{_section_html(sections["procedure"])}</div>
  </div>

  <section class="glass rounded-2xl p-6 overflow-hidden">
    <div class="flex justify-between items-center mb-6">
      <h2 class="text-xl font-semibold text-emerald-400">Virtual Apparatus</h2>
      <button onclick="simulation.toggle()" id="simBtn" class="bg-emerald-500/20 text-emerald-300 hover:bg-emerald-500/30 px-4 py-2 rounded-lg text-sm font-bold border border-emerald-500/30">Start Simulation</button>
    </div>
    <div class="grid grid-cols-1 lg:grid-cols-3 gap-6">
      <div class="lg:col-span-2 relative bg-black/40 rounded-xl overflow-hidden border border-white/5 h-[300px] flex items-center justify-center">
        <canvas id="simCanvas" width="800" height="300"></canvas>
        <div id="simOverlay" class="absolute inset-0 flex items-center justify-center pointer-events-none">
          <p class="text-white/20 font-bold text-4xl uppercase tracking-widest">Simulation Paused</p>
        </div>
      </div>
      <div class="space-y-4 p-4 bg-white/5 rounded-xl border border-white/5">
        <h3 class="text-sm font-bold text-slate-400 uppercase tracking-wider mb-2">Controls</h3>
        <div id="simControls" class="space-y-4">{_controls_html(model.simulation_type)}
        </div>
      </div>
    </div>
  </section>

  <div class="grid grid-cols-1 lg:grid-cols-2 gap-8">
    <section class="glass rounded-2xl p-6">
      <div class="flex justify-between items-center mb-4">
        <h2 class="text-xl font-semibold text-orange-400">Observation Table</h2>
        <span class="text-xs bg-orange-500/10 text-orange-300 px-2 py-1 rounded">Editable</span>
      </div>
      <div class="overflow-x-auto">
        <table class="w-full text-sm text-left">
          <thead class="text-xs text-slate-400 uppercase bg-white/5"><tr>{header_cells}</tr></thead>
          <tbody id="dataTableBody"></tbody>
        </table>
      </div>
      <button onclick="addRow()" class="mt-4 w-full py-2 bg-white/5 hover:bg-white/10 rounded-lg text-slate-400 text-xs font-bold border border-white/10">+ Add Row</button>
    </section>{chart_section}
  </div>

  <section class="glass rounded-2xl p-6 border-l-4 border-cyan-500">
    <h2 class="text-xl font-semibold text-cyan-400 mb-4">Data Analysis</h2>
    <div id="analysisContent" class="max-w-none text-slate-300">{analysis_html}</div>
    <p id="analysisNote" class="hidden text-xs text-amber-300 mt-3"></p>
  </section>

  {questions}
  {_section_html(sections["discussion"])}
  {_section_html(sections["conclusion"])}

  <footer class="text-center text-slate-600 text-sm py-8">Generated by Galvaniy Labs - Your Smart Lab Companion</footer>
</div>
<script>
{head}{RUNTIME}
</script>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Static PDF
# ---------------------------------------------------------------------------

def _pdf_text(text: str) -> str:
    return xml_escape(text).replace("\n", "<br/>")


def _pdf_styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="ReportTitle", parent=styles["Title"], fontSize=16, leading=20, spaceAfter=4))
    styles.add(ParagraphStyle(name="ReportCode", parent=styles["Normal"], fontSize=10, textColor=colors.grey, alignment=1, spaceAfter=10))
    styles.add(ParagraphStyle(name="SectionHeading", fontName="Helvetica-Bold", fontSize=12, leading=15, spaceBefore=10, spaceAfter=4))
    styles.add(ParagraphStyle(name="Body", parent=styles["Normal"], fontSize=10, leading=13, spaceAfter=4))
    styles.add(ParagraphStyle(name="Question", parent=styles["Normal"], fontName="Helvetica-Bold", fontSize=10, leading=13, spaceBefore=4))
    styles.add(ParagraphStyle(name="Caption", parent=styles["Normal"], fontSize=9, leading=11, textColor=colors.grey, spaceBefore=4))
    return styles


def _section_flowables(section: Section, styles) -> list:
    story = [Paragraph(_pdf_text(section.heading), styles["SectionHeading"])]
    if section.kind in ("bullets", "steps"):
        story.append(ListFlowable(
            [ListItem(Paragraph(_pdf_text(item), styles["Body"])) for item in section.items],
            bulletType="1" if section.kind == "steps" else "bullet",
        ))
    elif section.kind == "qa":
        for i, (question, answer) in enumerate(section.items, start=1):
            story.append(Paragraph(_pdf_text(f"Q{i}: {question}"), styles["Question"]))
            story.append(Paragraph(_pdf_text(f"A: {answer}"), styles["Body"]))
    else:
        story.append(Paragraph(_pdf_text(section.text), styles["Body"]))
    return story


def _data_table(model: ReportModel, styles):
    if model.column_count == 0:
        # reportlab cannot lay out a table without columns
        return Paragraph("No data recorded.", styles["Body"])
    data = [list(model.table_headers)] + [[number_to_string(v) for v in row] for row in model.table_data]
    width = 170 * mm
    table = Table(data, colWidths=[width / model.column_count] * model.column_count, repeatRows=1)
    table.setStyle(TableStyle([
        ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
        ("BACKGROUND", (0, 0), (-1, 0), colors.whitesmoke),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ALIGN", (0, 1), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ]))
    return table


def _chart_caption(model: ReportModel) -> Optional[str]:
    renderer = ChartRenderer(model.graph_config, model.table_headers)
    series = renderer.sync(model.table_data)
    if series is None:
        return None
    caption = f"Graph: {series.title or series.label} ({series.y_label or 'y'} against {series.x_label or 'x'})"
    fit = series.linear_fit()
    if fit is not None:
        slope, intercept = fit
        caption += f". Best-fit line: y = {slope:.4f}x + {intercept:.4f}"
    return caption


def build_static_pdf(model: ReportModel, experiment_code: str) -> bytes:
    """Render the paginated static report. Analysis placeholders read [calculated]."""
    styles = _pdf_styles()
    sections = report_sections(model)
    story = [
        Paragraph(_pdf_text(f"Lab Report: {experiment_code}"), styles["ReportCode"]),
        Paragraph(_pdf_text(model.title), styles["ReportTitle"]),
    ]
    for section in sections:
        if section.key == "questions":
            continue
        story.extend(_section_flowables(section, styles))
        if section.key == "procedure":
            story.append(Paragraph("Results (Data Table)", styles["SectionHeading"]))
            story.append(_data_table(model, styles))
            caption = _chart_caption(model)
            if caption:
                story.append(Paragraph(_pdf_text(caption), styles["Caption"]))
            story.append(Paragraph("Analysis", styles["SectionHeading"]))
            story.append(Paragraph(_pdf_text(render_static_analysis(model.analysis_template)), styles["Body"]))
            questions = next((s for s in sections if s.key == "questions"), None)
            if questions is not None:
                story.extend(_section_flowables(questions, styles))
        story.append(Spacer(1, 2 * mm))

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer, pagesize=A4,
        leftMargin=20 * mm, rightMargin=20 * mm, topMargin=18 * mm, bottomMargin=18 * mm,
        title=f"{experiment_code} Lab Report", author="Galvaniy Labs",
    )
    doc.build(story)
    return buffer.getvalue()
