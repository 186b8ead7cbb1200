"""Tests for platform resolution."""

from unittest import mock

import testtools

from bundlestrap import bundle
from bundlestrap import exceptions
from bundlestrap import ociplatform


class NormalizeArchTestCase(testtools.TestCase):
    def test_aliases(self):
        """Test host architecture names map to OCI names."""
        self.assertEqual(('386', ''), ociplatform.normalize_arch('i386'))
        self.assertEqual(('amd64', ''), ociplatform.normalize_arch('x86_64'))
        self.assertEqual(('amd64', ''), ociplatform.normalize_arch('x86-64'))
        self.assertEqual(('arm64', ''), ociplatform.normalize_arch('aarch64'))
        self.assertEqual(('arm64', ''),
                         ociplatform.normalize_arch('arm64', 'v8'))
        self.assertEqual(('arm', 'v7'), ociplatform.normalize_arch('armhf'))
        self.assertEqual(('arm', 'v6'), ociplatform.normalize_arch('armel'))
        self.assertEqual(('arm', 'v7'), ociplatform.normalize_arch('arm'))
        self.assertEqual(('arm', 'v5'),
                         ociplatform.normalize_arch('arm', '5'))

    def test_unknown_passthrough(self):
        """Test unknown architectures are only lower cased."""
        self.assertEqual(('s390x', ''), ociplatform.normalize_arch('S390X'))


class ResolvePlatformTestCase(testtools.TestCase):
    def test_arch_option(self):
        """Test the arch alias table wins over everything else."""
        opts = bundle.Options(arch='arm64v8', platform='linux/amd64')
        self.assertEqual(ociplatform.Platform('linux', 'arm64', ''),
                         ociplatform.resolve_platform(opts))

    def test_arch_arm32(self):
        """Test 32 bit arm aliases keep their variant."""
        opts = bundle.Options(arch='arm32v6')
        self.assertEqual('linux/arm/v6',
                         str(ociplatform.resolve_platform(opts)))

    def test_unknown_arch(self):
        """Test an unknown alias raises ArchUnknownError."""
        opts = bundle.Options(arch='vax')
        e = self.assertRaises(exceptions.ArchUnknownError,
                              ociplatform.resolve_platform, opts)
        self.assertIn('failed to parse the arch value: vax', str(e))

    def test_platform_string(self):
        """Test an os/arch/variant string is parsed and normalized."""
        opts = bundle.Options(platform='linux/aarch64')
        self.assertEqual('linux/arm64',
                         str(ociplatform.resolve_platform(opts)))

    def test_bad_platform_string(self):
        """Test malformed and non linux platforms are rejected."""
        self.assertRaises(exceptions.RecipeHeaderMalformedError,
                          ociplatform.platform_from_string, 'linux')
        self.assertRaises(exceptions.RecipeHeaderMalformedError,
                          ociplatform.platform_from_string, 'linux/a/b/c')
        self.assertRaises(exceptions.UnsupportedPlatformError,
                          ociplatform.platform_from_string, 'windows/amd64')

    @mock.patch('bundlestrap.ociplatform.host_platform.machine',
                return_value='x86_64')
    @mock.patch('bundlestrap.ociplatform.sys.platform', 'linux')
    def test_default(self, mock_machine):
        """Test the host platform is used without options."""
        self.assertEqual(ociplatform.Platform('linux', 'amd64', ''),
                         ociplatform.resolve_platform(bundle.Options()))

    @mock.patch('bundlestrap.ociplatform.sys.platform', 'darwin')
    def test_default_not_linux(self):
        """Test non linux hosts are unsupported."""
        self.assertRaises(exceptions.UnsupportedPlatformError,
                          ociplatform.default_platform)

    @mock.patch('bundlestrap.ociplatform._read_cpuinfo_arch',
                return_value='6')
    def test_arm_variant(self, mock_cpuinfo):
        """Test arm hosts read their variant from cpuinfo."""
        self.assertEqual('v6', ociplatform.cpu_variant('arm'))
        self.assertEqual('', ociplatform.cpu_variant('arm64'))
        self.assertEqual('', ociplatform.cpu_variant('amd64'))


class SatisfiesTestCase(testtools.TestCase):
    def test_variant_optional(self):
        """Test a required platform without variant accepts any variant."""
        required = ociplatform.Platform('linux', 'arm', '')
        self.assertTrue(ociplatform.satisfies(
            required, ociplatform.Platform('linux', 'arm', 'v7')))

    def test_mismatch(self):
        """Test architecture and variant mismatches."""
        required = ociplatform.Platform('linux', 'arm', 'v7')
        self.assertFalse(ociplatform.satisfies(
            required, ociplatform.Platform('linux', 'arm', 'v6')))
        self.assertFalse(ociplatform.satisfies(
            required, ociplatform.Platform('linux', 'amd64', '')))

    def test_normalized(self):
        """Test both sides are normalized before comparison."""
        required = ociplatform.Platform('linux', 'amd64', '')
        self.assertTrue(ociplatform.satisfies(
            required, ociplatform.Platform('linux', 'x86_64', '')))

    def test_check_image_platform(self):
        """Test image platform checks."""
        required = ociplatform.Platform('linux', 'amd64', '')
        image = mock.MagicMock()

        image.platform.return_value = None
        ociplatform.check_image_platform(required, image)

        image.platform.return_value = ociplatform.Platform(
            'linux', 'arm64', '')
        self.assertRaises(exceptions.PlatformMismatchError,
                          ociplatform.check_image_platform, required, image)
