#!/usr/bin/env python3
"""
测试运行脚本
按测试类型或单个跟踪器运行pytest
"""

import sys
import subprocess
from pathlib import Path
import argparse

PROJECT_ROOT = Path(__file__).parent

TEST_PATHS = {
    'unit': ['tests/unit/'],
    'integration': ['tests/integration/'],
    'all': ['tests/'],
}

# 单个跟踪器相关的测试文件
TRACKER_TESTS = {
    'planar': ['tests/integration/test_planar_tracker.py'],
    'adhoc': ['tests/integration/test_adhoc_tracker.py', 'tests/unit/test_geometry.py'],
    'pool': ['tests/integration/test_tracker_pool.py'],
}


def build_command(paths, verbose=True, coverage=False, keyword=None, failfast=False):
    """组装pytest命令行"""
    cmd = [sys.executable, '-m', 'pytest', *paths]

    if verbose:
        cmd.append('-v')
    if failfast:
        cmd.append('-x')
    if keyword:
        cmd.extend(['-k', keyword])
    if coverage:
        cmd.extend(['--cov=ar_tracker', '--cov-report=html', '--cov-report=term-missing'])

    cmd.extend(['--tb=short', '--color=yes', '--disable-warnings'])
    return cmd


def run_tests(paths, **options):
    """运行测试，返回是否全部通过"""
    cmd = build_command(paths, **options)
    print(f"Running command: {' '.join(cmd)}")
    print("-" * 60)

    try:
        result = subprocess.run(cmd, cwd=PROJECT_ROOT)
    except OSError as e:
        print(f"Error running tests: {e}")
        return False
    return result.returncode == 0


def check_dependencies(coverage=False):
    """检查测试依赖"""
    modules = ['pytest', 'numpy', 'cv2', 'yaml'] + (['pytest_cov'] if coverage else [])
    missing = []
    for name in modules:
        try:
            __import__(name)
        except ImportError:
            missing.append(name)

    if missing:
        print(f"[FAIL] Missing test dependencies: {', '.join(missing)}")
        print("Install them with: pip install -e .[dev]")
        return False

    import cv2
    print(f"[OK] Test dependencies available (OpenCV {cv2.__version__})")
    return True


def main():
    parser = argparse.ArgumentParser(description='Run AR Tracker tests')
    parser.add_argument('--type', choices=sorted(TEST_PATHS), default='all',
                        help='Type of tests to run')
    parser.add_argument('--tracker', choices=sorted(TRACKER_TESTS), default=None,
                        help='Only run the tests of one tracker (overrides --type)')
    parser.add_argument('--quiet', action='store_true', help='Less pytest output')
    parser.add_argument('--coverage', action='store_true', help='Generate coverage report')
    parser.add_argument('-k', dest='keyword', default=None,
                        help='Only run tests matching the keyword expression')
    parser.add_argument('-x', dest='failfast', action='store_true', help='Stop at the first failure')
    parser.add_argument('--check-deps', action='store_true', help='Check test dependencies only')
    args = parser.parse_args()

    sys.path.insert(0, str(PROJECT_ROOT))
    from ar_tracker.version import get_version_string
    print(f"AR Tracker {get_version_string()} Test Runner")
    print("=" * 50)

    if not check_dependencies(args.coverage):
        return False
    if args.check_deps:
        return True

    paths = TRACKER_TESTS[args.tracker] if args.tracker else TEST_PATHS[args.type]
    print(f"Running {args.tracker or args.type} tests...")
    success = run_tests(paths, verbose=not args.quiet, coverage=args.coverage,
                        keyword=args.keyword, failfast=args.failfast)

    print("\n[OK] All tests passed!" if success else "\n[FAIL] Some tests failed!")
    return success


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
