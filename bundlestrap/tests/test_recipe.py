"""Tests for definition file parsing."""

import testtools

from bundlestrap import exceptions
from bundlestrap import recipe


DEFINITION = """# A comment
Bootstrap: docker
From: busybox:latest
IncludeCmd: yes

%post
    echo hello > /hello

    echo world >> /hello

%runscript
    exec /bin/sh "$@"

%appinstall foo
    make install

%apprun foo
    exec foo
"""


class ParseTestCase(testtools.TestCase):
    def test_header(self):
        """Test header keys are lower cased."""
        r = recipe.parse(DEFINITION)
        self.assertEqual('docker', r.bootstrap)
        self.assertEqual('busybox:latest', r.get('from'))
        self.assertEqual('yes', r.get('includecmd'))
        self.assertEqual('', r.get('registry'))

    def test_sections(self):
        """Test section bodies keep their inner blank lines."""
        r = recipe.parse(DEFINITION)
        self.assertEqual(['post', 'runscript'], list(r.sections))
        self.assertEqual(
            '    echo hello > /hello\n\n    echo world >> /hello',
            r.sections['post'])
        self.assertEqual('    exec /bin/sh "$@"', r.sections['runscript'])

    def test_apps(self):
        """Test app sections are grouped by app name."""
        r = recipe.parse(DEFINITION)
        self.assertEqual(['foo'], list(r.apps))
        self.assertEqual('    make install', r.apps['foo']['appinstall'])
        self.assertEqual('    exec foo', r.apps['foo']['apprun'])

    def test_section_args(self):
        """Test section arguments and the definition text are kept."""
        text = 'Bootstrap: scratch\n%post -c /bin/bash\n    true\n%test\n'
        r = recipe.parse(text)
        self.assertEqual({'post': '-c /bin/bash', 'test': ''},
                         r.section_args)
        self.assertEqual(text, r.raw)
        self.assertEqual('', recipe.Recipe({'bootstrap': 'scratch'}).raw)

    def test_bootstrap_case(self):
        """Test the bootstrap value is case insensitive."""
        r = recipe.parse('BOOTSTRAP: Docker\nFrom: alpine\n')
        self.assertEqual('docker', r.bootstrap)

    def test_missing_bootstrap(self):
        """Test a definition without bootstrap is rejected."""
        self.assertRaises(exceptions.RecipeHeaderMissingError,
                          recipe.parse, 'From: alpine\n')

    def test_malformed_header(self):
        """Test a header line without a colon is rejected."""
        self.assertRaises(exceptions.RecipeHeaderMalformedError,
                          recipe.parse, 'Bootstrap: docker\nnonsense\n')

    def test_app_without_name(self):
        """Test app sections need an app name."""
        self.assertRaises(exceptions.RecipeHeaderMalformedError,
                          recipe.parse, 'Bootstrap: docker\n%appinstall\n')

    def test_require(self):
        """Test require raises for missing or blank keys."""
        r = recipe.Recipe({'Bootstrap': 'yum', 'MirrorURL': '  '})
        e = self.assertRaises(exceptions.RecipeHeaderMissingError,
                              r.require, 'mirrorurl')
        self.assertEqual('yum', e.bootstrap)
        self.assertEqual('mirrorurl', e.key)
        self.assertEqual('invalid yum header, no mirrorurl specified', str(e))
