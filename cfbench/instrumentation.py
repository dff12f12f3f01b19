"""Page instrumentation injected before any application script runs.

The script keeps an accumulator on ``globalThis.__BENCH__`` that performance
observers push into, and exposes ``globalThis.__BENCH_GET__()`` which the
metrics collector pulls a snapshot from. Nothing is pushed to the harness.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from .config import ConfigError

TBT_WINDOW_MS = 5_000
LONG_TASK_BLOCKING_THRESHOLD_MS = 50

SNAPSHOT_SCRIPT = "() => (globalThis.__BENCH_GET__ ? globalThis.__BENCH_GET__() : null)"

_OBSERVERS_JS = r"""
;(function(){
  globalThis.__CF_BENCH_CONFIG__ = __CONFIG_JSON__;
  const root = (globalThis.__BENCH__ = globalThis.__BENCH__ || { cwv: {}, longtasks: [], errors: [] });
  const now = () => (globalThis.performance && performance.now ? performance.now() : Date.now());
  const setMetric = (name, value, source) => {
    root.cwv[name] = { value: value, source: source || 'observer' };
  };
  const observe = (type, onEntry, extra) => {
    try {
      const obs = new PerformanceObserver((list) => {
        for (const entry of list.getEntries()) onEntry(entry);
      });
      obs.observe(Object.assign({ type: type, buffered: true }, extra || {}));
    } catch (e) {
      root.errors.push('observer ' + type + ' unavailable');
    }
  };

  observe('largest-contentful-paint', (e) => {
    setMetric('lcp', e.renderTime || e.startTime);
    root.cwv.lcpLastTs = now();
  });

  let clsSession = 0, clsFirst = 0, clsLast = 0, clsMax = 0;
  observe('layout-shift', (e) => {
    if (e.hadRecentInput) return;
    if (clsSession && (e.startTime - clsLast > 1000 || e.startTime - clsFirst > 5000)) clsSession = 0;
    if (!clsSession) clsFirst = e.startTime;
    clsSession += e.value;
    clsLast = e.startTime;
    clsMax = Math.max(clsMax, clsSession);
    setMetric('cls', clsMax);
  });

  const interactions = new Map();
  observe('event', (e) => {
    if (!e.interactionId) return;
    interactions.set(e.interactionId, Math.max(interactions.get(e.interactionId) || 0, e.duration));
    const durations = Array.from(interactions.values()).sort((a, b) => b - a);
    setMetric('inp', durations[Math.min(durations.length - 1, Math.floor(durations.length / 50))]);
  }, { durationThreshold: 16 });

  observe('paint', (e) => {
    if (e.name === 'first-contentful-paint') setMetric('fcp', e.startTime);
  });
  observe('navigation', (e) => { setMetric('ttfb', e.responseStart); });
  observe('longtask', (e) => {
    root.longtasks.push({ startTime: e.startTime, duration: e.duration });
  });

  __WEB_VITALS_HOOKS__

  globalThis.addEventListener && globalThis.addEventListener('error', (e) => {
    try { root.errors.push(String(e && e.message ? e.message : e)); } catch (_) {}
  });
  globalThis.addEventListener && globalThis.addEventListener('unhandledrejection', (e) => {
    try { root.errors.push(String(e && e.reason ? e.reason : e)); } catch (_) {}
  });

  globalThis.__BENCH_GET__ = () => {
    const nav = performance.getEntriesByType('navigation')[0];
    let fcp = root.cwv.fcp ? root.cwv.fcp.value : null;
    for (const p of performance.getEntriesByType('paint') || []) {
      if (p.name === 'first-contentful-paint') fcp = p.startTime;
    }
    const hasFcp = Number.isFinite(fcp);
    const start = hasFcp ? fcp : null;
    const end = hasFcp ? fcp + __TBT_WINDOW_MS__ : null;
    let tbt = null, count = 0, worst = 0;
    const allLongTasks = root.longtasks || [];
    if (hasFcp) {
      tbt = 0;
      for (const lt of allLongTasks) {
        if (lt.startTime < start || lt.startTime > end) continue;
        const block = Math.max(0, lt.duration - __BLOCKING_THRESHOLD_MS__);
        if (block > 0) { tbt += block; count++; worst = Math.max(worst, lt.duration); }
      }
    }

    const resources = performance.getEntriesByType('resource') || [];
    const byType = { js: 0, css: 0, img: 0, font: 0, other: 0, total: 0, count: resources.length };
    for (const r of resources) {
      const size = r.transferSize || 0;
      const name = r.name || '';
      byType.total += size;
      if (/\.js(\?|$)/i.test(name)) byType.js += size;
      else if (/\.css(\?|$)/i.test(name)) byType.css += size;
      else if (/\.(png|jpg|jpeg|webp|gif|svg|avif)(\?|$)/i.test(name)) byType.img += size;
      else if (/\.(woff2|woff|ttf|otf)(\?|$)/i.test(name)) byType.font += size;
      else byType.other += size;
    }

    return {
      href: location.href,
      nav: nav ? {
        type: nav.type,
        duration: nav.duration,
        ttfb: nav.responseStart,
        domInteractive: nav.domInteractive,
        domContentLoaded: nav.domContentLoadedEventEnd,
        loadEventEnd: nav.loadEventEnd,
        transferSize: nav.transferSize,
        encodedBodySize: nav.encodedBodySize,
        decodedBodySize: nav.decodedBodySize,
      } : null,
      cwv: root.cwv,
      longTasks: {
        fcp: start,
        windowEnd: end,
        tbt: tbt,
        count: count,
        totalCount: allLongTasks.length,
        hasFcp: hasFcp,
        worstLongTask: worst,
      },
      resources: byType,
      errors: root.errors,
      app: globalThis.__CF_BENCH__ || null,
    };
  };
})();
"""

# Only installed when a web-vitals IIFE bundle is supplied; the library values
# then replace the raw observer readings.
_WEB_VITALS_HOOKS_JS = r"""
  try {
    const wv = globalThis.webVitals || (typeof webVitals !== 'undefined' ? webVitals : undefined);
    if (wv && typeof wv.onLCP === 'function') {
      const opts = { reportAllChanges: true };
      wv.onLCP((m) => { setMetric('lcp', m.value, 'web-vitals'); root.cwv.lcpLastTs = now(); }, opts);
      wv.onCLS((m) => setMetric('cls', m.value, 'web-vitals'), opts);
      wv.onINP((m) => setMetric('inp', m.value, 'web-vitals'), opts);
      wv.onFCP((m) => setMetric('fcp', m.value, 'web-vitals'), opts);
      wv.onTTFB((m) => setMetric('ttfb', m.value, 'web-vitals'), opts);
    }
  } catch (e) {
    root.errors.push('web-vitals init failed: ' + (e && e.message ? e.message : String(e)));
  }
"""


def load_web_vitals_source(path: str | Path | None) -> str | None:
    if not path:
        return None
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read web-vitals bundle {path}: {exc}") from exc


def build_init_script(bench_config: Mapping[str, Any], web_vitals_source: str | None = None) -> str:
    """Assemble the init script for one profile.

    ``bench_config`` is exposed to the page as ``__CF_BENCH_CONFIG__`` so the
    application can pick, for example, its chart fetch cache mode.
    """
    body = (
        _OBSERVERS_JS.replace("__CONFIG_JSON__", json.dumps(dict(bench_config), sort_keys=True))
        .replace("__TBT_WINDOW_MS__", str(TBT_WINDOW_MS))
        .replace("__BLOCKING_THRESHOLD_MS__", str(LONG_TASK_BLOCKING_THRESHOLD_MS))
        .replace("__WEB_VITALS_HOOKS__", _WEB_VITALS_HOOKS_JS if web_vitals_source else "")
    )
    if web_vitals_source:
        return web_vitals_source + "\n" + body
    return body
