"""Build definition parsing.

A definition file is a header of "Key: value" lines followed by
%section blocks of shell text:

    Bootstrap: docker
    From: busybox:latest

    %post
        echo hello > /hello

    %appinstall foo
        make install

Header keys are case insensitive and are stored lower cased. App sections
are grouped by app name.
"""

import logging
import re

from bundlestrap import exceptions


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


SECTIONS = ('pre', 'setup', 'post', 'test', 'runscript', 'startscript',
            'environment', 'labels', 'files', 'help', 'arguments')
APP_SECTIONS = ('appinstall', 'appenv', 'apphelp', 'apprun', 'applabels',
                'appfiles', 'appstart', 'apptest')

SECTION_RE = re.compile(r'^%([a-zA-Z]+)\b\s*(.*)$')
HEADER_RE = re.compile(r'^([A-Za-z][A-Za-z0-9_-]*)\s*:\s*(.*)$')


class Recipe(object):
    def __init__(self, header=None, sections=None, apps=None,
                 section_args=None, raw=''):
        self.header = {}
        for key, value in (header or {}).items():
            self.header[key.lower()] = value
        self.sections = sections or {}
        self.apps = apps or {}
        # Anything after the section name, as in "%post -c /bin/bash".
        self.section_args = section_args or {}
        self.raw = raw

    @property
    def bootstrap(self):
        return self.header.get('bootstrap', '').strip().lower()

    def get(self, key, default=''):
        return self.header.get(key, default)

    def require(self, key):
        value = self.header.get(key, '').strip()
        if not value:
            raise exceptions.RecipeHeaderMissingError(self.bootstrap, key)
        return value


def parse(text):
    """Parse the text of a definition file into a Recipe."""
    header = {}
    sections = {}
    section_args = {}
    apps = {}

    current = None
    in_header = True
    for lineno, line in enumerate(text.splitlines(), 1):
        m = SECTION_RE.match(line)
        if m and (m.group(1).lower() in SECTIONS or
                  m.group(1).lower() in APP_SECTIONS):
            in_header = False
            name = m.group(1).lower()
            args = m.group(2).strip()
            if name in APP_SECTIONS:
                if not args:
                    raise exceptions.RecipeHeaderMalformedError(
                        'line %d: %%%s requires an app name' % (lineno, name))
                app_name = args.split()[0]
                current = []
                apps.setdefault(app_name, {})[name] = current
            else:
                current = []
                sections[name] = current
                section_args[name] = args
            continue

        if in_header:
            stripped = line.strip()
            if not stripped or stripped.startswith('#'):
                continue
            m = HEADER_RE.match(stripped)
            if not m:
                raise exceptions.RecipeHeaderMalformedError(
                    'line %d: invalid header %r' % (lineno, stripped))
            header[m.group(1).lower()] = m.group(2).strip()
            continue

        current.append(line)

    for name in sections:
        sections[name] = '\n'.join(sections[name]).strip('\n')
    for app in apps:
        for name in apps[app]:
            apps[app][name] = '\n'.join(apps[app][name]).strip('\n')

    if not header.get('bootstrap'):
        raise exceptions.RecipeHeaderMissingError(
            'definition', 'bootstrap',
            message='definition file has no bootstrap header')

    LOG.debug('Parsed definition with bootstrap %s and sections %s'
              % (header['bootstrap'], ', '.join(sections)))
    return Recipe(header, sections, apps, section_args=section_args,
                  raw=text)


def parse_file(path):
    with open(path) as f:
        return parse(f.read())
