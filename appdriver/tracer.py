"""Script injected into every page the driver controls.

It exposes ``window.__appdriver__`` with the DOM-mutation clock and the
application busy flag read by the synchronization engine, plus the helpers the
driver uses to read and set inputs and outputs. Shiny apps are read through
``Shiny.shinyapp`` and their input bindings; any other page falls back to plain
DOM elements looked up by id.
"""

from __future__ import annotations

import json

TRACER_NAME = "__appdriver__"

TRACER_JS = r"""
(function () {
  if (window.__appdriver__) { return; }

  var clock = { lastMutation: performance.now(), mutations: 0 };
  function touch() { clock.lastMutation = performance.now(); }
  new MutationObserver(function (records) {
    touch();
    clock.mutations += records.length;
  }).observe(document, {
    childList: true, subtree: true, attributes: true, characterData: true
  });

  // Shiny input round-trips, counted from shiny:inputchanged until the server
  // answers with shiny:busy or shiny:idle. Shiny triggers these as jQuery
  // events, so they are only visible through jQuery once it has loaded. An
  // input the client never sends (an unchanged value) stops counting after
  // INPUT_ACK_MS.
  var INPUT_ACK_MS = 3000;
  var shiny = { hooked: false, serverBusy: false, unacked: 0, lastInput: 0 };

  function hookShiny() {
    if (shiny.hooked || !window.jQuery) { return; }
    shiny.hooked = true;
    var $doc = window.jQuery(document);
    $doc.on('shiny:inputchanged', function () {
      shiny.unacked += 1;
      shiny.lastInput = performance.now();
      touch();
    });
    $doc.on('shiny:busy', function () {
      shiny.serverBusy = true;
      shiny.unacked = 0;
    });
    $doc.on('shiny:idle', function () {
      shiny.serverBusy = false;
      shiny.unacked = 0;
      touch();
    });
  }
  document.addEventListener('DOMContentLoaded', hookShiny);

  function pendingInputs() {
    if (shiny.unacked > 0 && performance.now() - shiny.lastInput >= INPUT_ACK_MS) {
      shiny.unacked = 0;
    }
    return shiny.unacked;
  }

  function shinyApp() {
    return (window.Shiny && window.Shiny.shinyapp) ? window.Shiny.shinyapp : null;
  }

  function isInputElement(el) {
    var tag = el.tagName.toLowerCase();
    return tag === 'input' || tag === 'select' || tag === 'textarea' || tag === 'button';
  }

  function isOutputElement(el) {
    return el.hasAttribute('data-output') ||
      el.classList.contains('shiny-bound-output') ||
      el.classList.contains('shiny-text-output') ||
      el.classList.contains('shiny-html-output');
  }

  function elementValue(el) {
    var tag = el.tagName.toLowerCase();
    var type = (el.type || '').toLowerCase();
    if (tag === 'input') {
      if (type === 'checkbox') { return el.checked; }
      if (type === 'radio') {
        var checked = document.querySelector(
          'input[type=radio][name="' + CSS.escape(el.name) + '"]:checked');
        return checked ? checked.value : null;
      }
      if (type === 'number' || type === 'range') {
        return el.value === '' ? null : Number(el.value);
      }
      return el.value;
    }
    if (tag === 'select') {
      if (el.multiple) {
        return Array.prototype.map.call(el.selectedOptions, function (o) { return o.value; });
      }
      return el.value;
    }
    if (tag === 'textarea') { return el.value; }
    if (el.classList.contains('shiny-html-output')) { return el.innerHTML; }
    return el.textContent.trim();
  }

  function inputKey(values, name) {
    if (Object.prototype.hasOwnProperty.call(values, name)) { return name; }
    for (var key in values) {
      if (key.split(':')[0] === name) { return key; }
    }
    return null;
  }

  function lookup(name) {
    var app = shinyApp();
    if (app) {
      if (app.$values && Object.prototype.hasOwnProperty.call(app.$values, name)) {
        return { found: true, kind: 'output', value: app.$values[name] };
      }
      if (app.$inputValues) {
        var key = inputKey(app.$inputValues, name);
        if (key !== null) {
          return { found: true, kind: 'input', value: app.$inputValues[key] };
        }
      }
    }
    var el = document.getElementById(name);
    if (!el) { return { found: false, kind: null, value: null }; }
    return {
      found: true,
      kind: isInputElement(el) ? 'input' : 'output',
      value: elementValue(el)
    };
  }

  function allValues() {
    var result = { input: {}, output: {} };
    var app = shinyApp();
    if (app) {
      var key;
      for (key in (app.$inputValues || {})) {
        if (key.charAt(0) === '.') { continue; }
        result.input[key.split(':')[0]] = app.$inputValues[key];
      }
      for (key in (app.$values || {})) {
        result.output[key] = app.$values[key];
      }
      return result;
    }
    document.querySelectorAll('input[id], select[id], textarea[id]').forEach(function (el) {
      result.input[el.id] = elementValue(el);
    });
    document.querySelectorAll('[id]').forEach(function (el) {
      if (!isInputElement(el) && isOutputElement(el)) {
        result.output[el.id] = elementValue(el);
      }
    });
    return result;
  }

  function setElementValue(el, value) {
    var tag = el.tagName.toLowerCase();
    var type = (el.type || '').toLowerCase();
    if (type === 'checkbox') {
      el.checked = !!value;
    } else if (type === 'radio') {
      document.querySelectorAll(
        'input[type=radio][name="' + CSS.escape(el.name) + '"]'
      ).forEach(function (r) { r.checked = (r.value === String(value)); });
    } else if (tag === 'select' && el.multiple) {
      var wanted = [].concat(value).map(String);
      Array.prototype.forEach.call(el.options, function (o) {
        o.selected = wanted.indexOf(o.value) >= 0;
      });
    } else {
      el.value = (value === null || value === undefined) ? '' : String(value);
    }
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
  }

  function setInput(name, value, allowNoBinding, priority) {
    var el = document.getElementById(name);
    if (el && value === 'click' &&
        (el.tagName.toLowerCase() === 'button' || el.classList.contains('action-button'))) {
      el.click();
      return { ok: true, via: 'click' };
    }
    var $ = window.jQuery;
    if (el && $) {
      var binding = $(el).data('shiny-input-binding');
      if (binding && typeof binding.receiveMessage === 'function') {
        binding.receiveMessage(el, { value: value });
        return { ok: true, via: 'binding' };
      }
    }
    if (el && isInputElement(el)) {
      setElementValue(el, value);
      return { ok: true, via: 'element' };
    }
    if (allowNoBinding && window.Shiny && typeof window.Shiny.setInputValue === 'function') {
      window.Shiny.setInputValue(name, value, { priority: priority });
      return { ok: true, via: 'setInputValue' };
    }
    return { ok: false, via: null };
  }

  function appBusy(busyFn) {
    hookShiny();
    if (document.readyState !== 'complete') { return { busy: true, error: null }; }
    var app = shinyApp();
    if (app && typeof app.isConnected === 'function' && !app.isConnected()) {
      return { busy: true, error: null };
    }
    var roundTrip = shiny.serverBusy || pendingInputs() > 0;
    try {
      return { busy: roundTrip || !!busyFn(), error: null };
    } catch (e) {
      return { busy: roundTrip, error: String(e) };
    }
  }

  window.__appdriver__ = {
    state: function (busyFn) {
      var app = appBusy(busyFn);
      return {
        msSinceMutation: performance.now() - clock.lastMutation,
        mutations: clock.mutations,
        appBusy: app.busy,
        pendingInputs: shiny.unacked,
        busyError: app.error,
        readyState: document.readyState
      };
    },
    lookup: function (names) { return names.map(lookup); },
    allValues: allValues,
    setInputs: function (inputs, allowNoBinding, priority) {
      hookShiny();
      var missing = [];
      Object.keys(inputs).forEach(function (name) {
        if (!setInput(name, inputs[name], allowNoBinding, priority).ok) {
          missing.push(name);
        }
      });
      // Setting el.value is not a DOM mutation; restart the quiet period here.
      touch();
      return missing;
    },
    html: function (selector, outer) {
      return Array.prototype.map.call(document.querySelectorAll(selector), function (el) {
        return outer ? el.outerHTML : el.innerHTML;
      });
    },
    text: function (selector) {
      return Array.prototype.map.call(document.querySelectorAll(selector), function (el) {
        return el.textContent;
      });
    },
    click: function (selector) {
      var el = document.querySelector(selector);
      if (!el) { return false; }
      hookShiny();
      el.click();
      touch();
      return true;
    },
    windowSize: function () {
      return { width: window.innerWidth, height: window.innerHeight };
    }
  };
})();
"""


def call(function: str, *args) -> str:
    """Build an expression calling a tracer helper with JSON-encoded args."""
    encoded = ", ".join(json.dumps(arg) for arg in args)
    return f"window.{TRACER_NAME}.{function}({encoded})"


def state_expression(busy_js: str) -> str:
    """Expression returning the tracer's idle-signal snapshot."""
    return f"window.{TRACER_NAME}.state(function () {{ return ({busy_js}); }})"
