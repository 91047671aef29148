# This file is part of the python-keyedarchive library.
# Copyright (C) 2020 dgelessus
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Lesser General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.


import argparse
import logging
import plistlib
import sys
import typing


from . import __version__
from . import envelope


def make_subcommand_parser(subs: typing.Any, name: str, *, help: str, description: str, **kwargs: typing.Any) -> argparse.ArgumentParser:
	"""Add a subcommand parser with some slightly modified defaults to a subcommand set.
	
	This function is used to ensure that all subcommands use the same base configuration for their ArgumentParser.
	"""
	
	ap = subs.add_parser(
		name,
		formatter_class=argparse.RawDescriptionHelpFormatter,
		help=help,
		description=description,
		allow_abbrev=False,
		add_help=False,
		**kwargs,
	)
	
	ap.add_argument("--help", action="help", help="Display this help message and exit.")
	ap.add_argument("file", help="The keyed archive file to read, or - for stdin.")
	
	return ap


def open_archive_file(file: str) -> envelope.ArchiveEnvelope:
	if file == "-":
		return envelope.ArchiveEnvelope.from_stream(sys.stdin.buffer)
	else:
		return envelope.ArchiveEnvelope.open(file)


def _with_body(header: str, body: typing.Iterable[str]) -> typing.Iterable[str]:
	# The header gets a colon only if there is at least one body line.
	body_it = iter(body)
	try:
		first = next(body_it)
	except StopIteration:
		yield header
	else:
		yield header + ":"
		yield "\t" + first
		for line in body_it:
			yield "\t" + line


def _count_description(count: int, singular: str, plural: str) -> str:
	if count == 0:
		return "empty"
	elif count == 1:
		return f"1 {singular}"
	else:
		return f"{count} {plural}"


def dump_raw_value(value: typing.Any, *, prefix: str = "") -> typing.Iterable[str]:
	"""Render a value from the object table without following any references."""
	
	if isinstance(value, plistlib.UID):
		yield f"{prefix}#{value.data}"
	elif isinstance(value, dict):
		yield from _with_body(
			f"{prefix}dictionary, {_count_description(len(value), 'entry', 'entries')}",
			(line for key, item in value.items() for line in dump_raw_value(item, prefix=f"{key}: ")),
		)
	elif isinstance(value, list):
		yield from _with_body(
			f"{prefix}array, {_count_description(len(value), 'element', 'elements')}",
			(line for item in value for line in dump_raw_value(item)),
		)
	elif isinstance(value, bytes):
		yield f"{prefix}{len(value)} bytes: {value!r}"
	else:
		yield f"{prefix}{value!r}"


def dump_archive(archive: envelope.ArchiveEnvelope) -> typing.Iterable[str]:
	yield f"archiver {archive.archiver!r}, version {archive.version}"
	for name, ref in archive.top.items():
		yield f"top-level object {name!r}: #{ref.data}"
	yield ""
	for index, value in enumerate(archive.objects):
		yield from dump_raw_value(value, prefix=f"#{index}: ")


def _describe_class(archive: envelope.ArchiveEnvelope, class_ref: typing.Any) -> str:
	if isinstance(class_ref, plistlib.UID) and class_ref.data < len(archive.objects):
		class_info = archive.objects[class_ref.data]
		if isinstance(class_info, dict):
			classes = class_info.get("$classes")
			if isinstance(classes, list) and classes and all(isinstance(name, str) for name in classes):
				return ", extends ".join(classes)
			class_name = class_info.get("$classname")
			if isinstance(class_name, str):
				return class_name
	return "(unknown class)"


def dump_object_tree(
	archive: envelope.ArchiveEnvelope,
	value: typing.Any,
	*,
	prefix: str = "",
	visiting: typing.Tuple[int, ...] = (),
) -> typing.Iterable[str]:
	"""Render a value and follow all references in it.
	
	Objects are rendered generically based on their fields,
	so no classes need to be registered.
	Archives written by other software may contain cycles,
	which are marked instead of being followed.
	"""
	
	if isinstance(value, plistlib.UID):
		index = value.data
		if index == envelope.NULL_REFERENCE.data:
			yield f"{prefix}nil"
		elif index >= len(archive.objects):
			yield f"{prefix}invalid reference #{index}"
		elif index in visiting:
			yield f"{prefix}#{index} (circular reference)"
		else:
			yield from dump_object_tree(archive, archive.objects[index], prefix=f"{prefix}#{index} ", visiting=visiting + (index,))
	elif isinstance(value, dict) and "$class" in value:
		fields = [(key, item) for key, item in value.items() if key != "$class"]
		yield from _with_body(
			f"{prefix}object of class {_describe_class(archive, value['$class'])}",
			(line for key, item in fields for line in dump_object_tree(archive, item, prefix=f"{key}: ", visiting=visiting)),
		)
	elif isinstance(value, dict):
		yield from _with_body(
			f"{prefix}dictionary, {_count_description(len(value), 'entry', 'entries')}",
			(line for key, item in value.items() for line in dump_object_tree(archive, item, prefix=f"{key}: ", visiting=visiting)),
		)
	elif isinstance(value, list):
		yield from _with_body(
			f"{prefix}array, {_count_description(len(value), 'element', 'elements')}",
			(line for item in value for line in dump_object_tree(archive, item, visiting=visiting)),
		)
	else:
		yield from dump_raw_value(value, prefix=prefix)


def do_read(ns: argparse.Namespace) -> typing.NoReturn:
	archive = open_archive_file(ns.file)
	for line in dump_archive(archive):
		print(line)
	
	sys.exit(0)


def do_tree(ns: argparse.Namespace) -> typing.NoReturn:
	archive = open_archive_file(ns.file)
	root = archive.root
	if root is None:
		print(f"Archive has no {envelope.ROOT_KEY!r} top-level object", file=sys.stderr)
		sys.exit(1)
	
	for line in dump_object_tree(archive, root):
		print(line)
	
	sys.exit(0)


def main() -> typing.NoReturn:
	"""Main function of the CLI.
	
	This function is a valid setuptools entry point.
	Arguments are passed in sys.argv,
	and every execution path ends with a sys.exit call.
	"""
	
	ap = argparse.ArgumentParser(
		formatter_class=argparse.RawDescriptionHelpFormatter,
		description="""
%(prog)s is a tool for dumping keyed archives, which are produced by the
NSKeyedArchiver class in Apple's Foundation framework. Both binary and XML
plists are supported.
""",
		allow_abbrev=False,
		add_help=False,
	)
	
	ap.add_argument("--help", action="help", help="Display this help message and exit.")
	ap.add_argument("--version", action="version", version=__version__, help="Display version information and exit.")
	ap.add_argument("--verbose", action="store_true", help="Log debugging information to stderr.")
	
	subs = ap.add_subparsers(
		dest="subcommand",
		metavar="SUBCOMMAND",
	)
	
	make_subcommand_parser(
		subs,
		"read",
		help="Read and display the raw object table of a keyed archive.",
		description="""
Read and display the raw object table of a keyed archive.

Every entry of the object table is displayed with its index. References are
displayed as #index and are not followed.
""",
	)
	
	make_subcommand_parser(
		subs,
		"tree",
		help="Read and display the object tree of a keyed archive.",
		description="""
Read and display the object tree of a keyed archive.

Starting at the root object, all references are followed and the referenced
objects are displayed nested in the object that refers to them. Objects are
displayed generically with their class names and fields, so this works for
archives containing any classes.
""",
	)
	
	ns = ap.parse_args()
	
	if ns.verbose:
		logging.basicConfig(level=logging.DEBUG)
	
	try:
		if ns.subcommand is None:
			print("Missing subcommand", file=sys.stderr)
			sys.exit(2)
		elif ns.subcommand == "read":
			do_read(ns)
		elif ns.subcommand == "tree":
			do_tree(ns)
		else:
			print(f"Unknown subcommand: {ns.subcommand!r}", file=sys.stderr)
			sys.exit(2)
	except envelope.ArchiveError as exc:
		print(f"Error: {exc}", file=sys.stderr)
		sys.exit(1)


if __name__ == "__main__":
	sys.exit(main())
