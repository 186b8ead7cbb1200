"""Container metadata derived from an OCI image config.

An OCI image describes how it should be started with ENTRYPOINT and CMD
arrays and its environment with an Env list. The runtime only knows how
to exec /.singularity.d/runscript and source /.singularity.d/env/*.sh, so
here we translate one into the other.
"""

import json
import logging
import os
import re

from bundlestrap import constants


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


VALID_ENV_KEY_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

RUNSCRIPT_TEMPLATE = """#!/bin/sh
OCI_ENTRYPOINT='%(entrypoint)s'
OCI_CMD='%(cmd)s'

# When SINGULARITY_NO_EVAL set, use OCI compatible behavior that does
# not evaluate resolved CMD / ENTRYPOINT / ARGS through the shell, and
# does not modify expected quoting behavior of args.
if [ -n "$SINGULARITY_NO_EVAL" ]; then
    # ENTRYPOINT only - run entrypoint plus args
    if [ -z "$OCI_CMD" ] && [ -n "$OCI_ENTRYPOINT" ]; then
%(prepend_entrypoint_2)s
        exec "$@"
    fi

    # CMD only - run CMD or override with args
    if [ -n "$OCI_CMD" ] && [ -z "$OCI_ENTRYPOINT" ]; then
        if [ $# -eq 0 ]; then
%(prepend_cmd_3)s
        fi
        exec "$@"
    fi

    # ENTRYPOINT and CMD - run ENTRYPOINT with CMD as default args
    # override with user provided args
    if [ $# -gt 0 ]; then
%(prepend_entrypoint_2)s
    else
%(prepend_cmd_2)s
%(prepend_entrypoint_2)s
    fi
    exec "$@"
fi

# Standard behavior evaluates CMD / ENTRYPOINT / ARGS combination
# through the shell before exec, and requires special quoting due to
# concatenation of CMDLINE_ARGS.
CMDLINE_ARGS=""
# prepare command line arguments for evaluation
for arg in "$@"; do
    CMDLINE_ARGS="${CMDLINE_ARGS} \\"$arg\\""
done

if [ -z "$OCI_CMD" ] && [ -n "$OCI_ENTRYPOINT" ]; then
    # ENTRYPOINT only - run entrypoint plus args
    SINGULARITY_OCI_RUN="${OCI_ENTRYPOINT} ${CMDLINE_ARGS}"
elif [ -n "$OCI_CMD" ] && [ -z "$OCI_ENTRYPOINT" ]; then
    # CMD only - run CMD or override with args
    if [ $# -gt 0 ]; then
        SINGULARITY_OCI_RUN="${CMDLINE_ARGS}"
    else
        SINGULARITY_OCI_RUN="${OCI_CMD}"
    fi
elif [ -n "$OCI_CMD" ] && [ -n "$OCI_ENTRYPOINT" ]; then
    # ENTRYPOINT and CMD - run ENTRYPOINT with CMD as default args
    # override with user provided args
    if [ $# -gt 0 ]; then
        SINGULARITY_OCI_RUN="${OCI_ENTRYPOINT} ${CMDLINE_ARGS}"
    else
        SINGULARITY_OCI_RUN="${OCI_ENTRYPOINT} ${OCI_CMD}"
    fi
else
    SINGULARITY_OCI_RUN="${CMDLINE_ARGS}"
fi

# Evaluate shell expressions first and set arguments accordingly,
# then execute final command as first container process
eval "set -- ${SINGULARITY_OCI_RUN}"
exec "$@"
"""


def escape(value):
    """Escape a string for use inside a double quoted shell string."""
    value = value.replace('\\', '\\\\')
    value = value.replace('"', '\\"')
    value = value.replace('`', '\\`')
    value = value.replace('$', '\\$')
    return value


def escape_single_quotes(value):
    """Escape a string for use inside a single quoted shell string."""
    return value.replace("'", "'\"'\"'")


def args_quoted(args):
    """Double quote and escape each argument, joined by spaces."""
    return ' '.join('"%s"' % escape(a) for a in args)


def _prepend(args, indent):
    lines = []
    for arg in reversed(args):
        lines.append('%sset -- \'%s\' "$@"'
                     % (' ' * indent, escape_single_quotes(arg)))
    if not lines:
        # An empty then / else body is a shell syntax error.
        lines.append('%s:' % (' ' * indent))
    return '\n'.join(lines)


def generate_runscript(entrypoint, cmd):
    entrypoint = entrypoint or []
    cmd = cmd or []
    return RUNSCRIPT_TEMPLATE % {
        'entrypoint': escape_single_quotes(args_quoted(entrypoint)),
        'cmd': escape_single_quotes(args_quoted(cmd)),
        'prepend_entrypoint_2': _prepend(entrypoint, 8),
        'prepend_cmd_2': _prepend(cmd, 8),
        'prepend_cmd_3': _prepend(cmd, 12),
    }


def generate_env_script(env):
    lines = ['#!/bin/sh']
    for entry in env or []:
        key, sep, value = entry.partition('=')
        if not VALID_ENV_KEY_RE.match(key):
            LOG.debug('Skipping environment variable with invalid name: %s'
                      % key)
            continue

        if not sep:
            lines.append('export %s="${%s:-}"' % (key, key))
        elif key == 'PATH':
            lines.append('export PATH="%s"' % escape(value))
        else:
            lines.append('export %s="${%s:-%s}"' % (key, key, escape(value)))
    return '\n'.join(lines) + '\n'


def generate_labels(labels):
    return json.dumps(labels or {}, indent='\t', sort_keys=True)


def _write(path, mode, content):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        f.write(content)
    os.chmod(path, mode)


def insert_runscript(rootfs, config):
    LOG.debug('Writing runscript for entrypoint %s and cmd %s'
              % (config.entrypoint, config.cmd))
    _write(os.path.join(rootfs, constants.RUNSCRIPT_PATH), 0o755,
           generate_runscript(config.entrypoint, config.cmd))


def insert_env_script(rootfs, config):
    _write(os.path.join(rootfs, constants.DOCKER_ENV_PATH), 0o755,
           generate_env_script(config.env))


def insert_oci_config(bundle, config):
    bundle.json_objects[constants.JSON_OBJECT_OCI_CONFIG] = \
        json.dumps(config.runtime_config, sort_keys=True).encode('utf-8')


def insert_labels(rootfs, config):
    _write(os.path.join(rootfs, constants.LABELS_PATH), 0o644,
           generate_labels(config.labels))


def insert_metadata(bundle, config):
    """Write everything derived from an OCI image config, in order."""
    insert_runscript(bundle.rootfs_path, config)
    insert_env_script(bundle.rootfs_path, config)
    insert_oci_config(bundle, config)
    insert_labels(bundle.rootfs_path, config)
