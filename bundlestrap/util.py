import functools
import hashlib
import json
import logging
import os
import shutil

from oslo_concurrency import processutils
from pbr.version import VersionInfo
import requests

from bundlestrap import exceptions


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


STATUS_CODES_TO_ERRORS = {
    401: exceptions.UnauthorizedError,
    403: exceptions.UnauthorizedError,
    404: exceptions.ImageNotFoundError,
}

# A full identity mapping of the 32 bit id space is what the initial user
# namespace looks like from /proc.
FULL_ID_MAP_SIZE = 4294967295


def get_user_agent():
    try:
        version = VersionInfo('bundlestrap').version_string()
    except Exception:
        version = '0.0.0'
    return 'Mozilla/5.0 (Linux x86_64) Bundle Strap/%s' % version


def request_url(method, url, headers=None, data=None, stream=False,
                auth=None, timeout=None, ok_codes=(200,)):
    if not headers:
        headers = {}
    headers.update({'User-Agent': get_user_agent()})
    body = None
    if data:
        headers['Content-Type'] = 'application/json'
        body = json.dumps(data)
    r = requests.request(method, url,
                         data=body,
                         headers=headers,
                         stream=stream,
                         auth=auth,
                         timeout=timeout)

    LOG.debug('-------------------------------------------------------')
    LOG.debug('API client requested: %s %s (stream=%s)'
              % (method, url, stream))
    for h in headers:
        if h == 'Authorization':
            LOG.debug('Header: %s = <redacted>' % h)
        else:
            LOG.debug('Header: %s = %s' % (h, headers[h]))
    LOG.debug('API client response: code = %s' % r.status_code)
    for h in r.headers:
        LOG.debug('Header: %s = %s' % (h, r.headers[h]))
    if not stream:
        if r.text:
            try:
                LOG.debug('Data:\n    %s'
                          % ('\n    '.join(json.dumps(json.loads(r.text),
                                                      indent=4,
                                                      sort_keys=True).split('\n'))))
            except ValueError:
                LOG.debug('Text:\n    %s'
                          % ('\n    '.join(r.text.split('\n'))))
    else:
        LOG.debug('Result content not logged for streaming requests')
    LOG.debug('-------------------------------------------------------')

    if r.status_code in ok_codes:
        return r

    text = '' if stream else r.text
    if r.status_code in STATUS_CODES_TO_ERRORS:
        raise STATUS_CODES_TO_ERRORS[r.status_code](
            'API request failed', method, url, r.status_code, text,
            r.headers)
    raise exceptions.APIError(
        'API request failed', method, url, r.status_code, text, r.headers)


def stream_to_file(ctx, response, path, chunk_size=102400):
    """Write a streamed response body to path.

    Returns a tuple of (bytes written, sha256 hex digest).
    """
    h = hashlib.sha256()
    written = 0
    with open(path, 'wb') as f:
        for chunk in response.iter_content(chunk_size):
            ctx.check()
            f.write(chunk)
            h.update(chunk)
            written += len(chunk)
    return written, h.hexdigest()


def find_bin(name):
    path = shutil.which(name)
    if not path:
        raise exceptions.ToolMissingError(name)
    return path


def run_tool(ctx, cmd, env=None, cwd=None, check_exit_code=(0,),
             process_input=None, logger=None):
    """Run a host tool and wait for it.

    Args:
        ctx: The BuildContext the tool belongs to. The child is killed if
            the context is cancelled while it runs.
        cmd: The argv list.
        env: Extra environment variables, layered over os.environ.
        cwd: Working directory for the child.
        check_exit_code: Exit codes which are not errors.
        process_input: Optional data written to the child's stdin.
        logger: Logger the child's output is proxied to.

    Returns:
        Tuple of (stdout, stderr, exit_code).

    Raises:
        ToolMissingError if the binary does not exist, CommandFailedError
        if it exits with an unexpected code, BuildCancelledError if the
        context was cancelled.
    """
    if not logger:
        logger = LOG
    ctx.check()

    env_variables = dict(os.environ)
    if env:
        env_variables.update(env)

    cmd = [str(c) for c in cmd]
    returncodes = []

    def _on_completion(proc):
        returncodes.append(proc.returncode)
        ctx.unregister_process(proc)

    logger.debug('Executing %s' % ' '.join(cmd))
    try:
        out, err = processutils.execute(
            *cmd, check_exit_code=list(check_exit_code),
            env_variables=env_variables, cwd=cwd,
            process_input=process_input,
            on_execute=ctx.register_process,
            on_completion=_on_completion)
        exit_code = returncodes[0] if returncodes else 0
    except FileNotFoundError:
        raise exceptions.ToolMissingError(cmd[0])
    except processutils.ProcessExecutionError as e:
        ctx.check()
        _proxy_output(logger, e.stdout, e.stderr)
        raise exceptions.CommandFailedError(
            cmd, e.exit_code, e.stdout, e.stderr)

    _proxy_output(logger, out, err)
    return out, err, exit_code


def _proxy_output(logger, out, err):
    for line in (out or '').splitlines():
        logger.debug(line)
    for line in (err or '').splitlines():
        logger.info(line)


def _read_proc(path):
    try:
        with open(path) as f:
            return f.read()
    except OSError:
        return None


def is_inside_user_namespace(pid='self'):
    """Determine whether pid runs inside a user namespace.

    Returns:
        Tuple of (inside, setgroups_allowed).
    """
    uid_map = _read_proc('/proc/%s/uid_map' % pid)
    if uid_map is None:
        return False, False

    inside = True
    fields = uid_map.split()
    if len(fields) == 3 and int(fields[2]) == FULL_ID_MAP_SIZE:
        inside = False

    setgroups = _read_proc('/proc/%s/setgroups' % pid) or ''
    return inside, setgroups.strip() == 'allow'


def host_uid():
    """Return the uid of the current user in the initial user namespace."""
    uid = os.getuid()
    uid_map = _read_proc('/proc/self/uid_map')
    if uid_map is None:
        return uid

    for line in uid_map.splitlines():
        fields = line.split()
        if len(fields) != 3:
            continue
        inside, outside, size = (int(f) for f in fields)
        if inside <= uid < inside + size:
            return outside + (uid - inside)
    return uid


@functools.lru_cache(maxsize=None)
def is_unprivileged():
    """True when extraction has to use rootless id mapping."""
    return os.geteuid() != 0 or host_uid() != 0
