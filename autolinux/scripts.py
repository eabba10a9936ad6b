"""
Generation of the start script and the first-boot setup script
The start script lives next to the install directory and is reused on every launch.
The setup script is written to root/finalize_setup.sh inside the tree; its presence
means first boot has not completed yet.
"""

import os
import shlex
import logging

from .distro_catalog import DistroFamily
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SETUP_SCRIPT_RELPATH = 'root/finalize_setup.sh'

# Android AIDs: network access, raw sockets, graphics
ANDROID_GROUPS = [
    ('aid_inet', 3003),
    ('aid_net_raw', 3004),
    ('aid_graphics', 1003),
]
NETWORK_GROUP = 'aid_inet'
USER_GROUPS = ['wheel', 'audio', 'video', 'storage', NETWORK_GROUP]

PAM_SU_POLICY = """#%PAM-1.0
auth       sufficient   pam_rootok.so
auth       required     pam_permit.so
account    required     pam_permit.so
session    required     pam_env.so
session    optional     pam_xauth.so
session    required     pam_permit.so"""

START_TEMPLATE = r'''#!/bin/sh
DISTROPATH={distro_path}
TARGET_USER="${{1:-root}}"
SETUP_SCRIPT="$DISTROPATH/{setup_relpath}"

mnt() {{
    if [ -x "$(command -v busybox)" ]; then
        busybox mount "$@"
    else
        /system/bin/mount "$@"
    fi
}}

run_chroot() {{
    if [ -x "$(command -v busybox)" ]; then
        busybox chroot "$DISTROPATH" "$@"
    else
        /system/bin/chroot "$DISTROPATH" "$@"
    fi
}}

echo "[*] Mounting system folders..."
mnt -o remount,dev,suid {data_partition}

for dir in dev dev/pts dev/shm proc sys sdcard; do
    [ ! -d "$DISTROPATH/$dir" ] && mkdir -p "$DISTROPATH/$dir"
done

mnt --bind /dev "$DISTROPATH/dev"
mnt --bind /sys "$DISTROPATH/sys"
mnt --bind /proc "$DISTROPATH/proc"
mnt -t devpts devpts "$DISTROPATH/dev/pts"
mnt -t tmpfs -o size={shm_size} tmpfs "$DISTROPATH/dev/shm"
mnt --bind {shared_storage} "$DISTROPATH/sdcard"

if [ -d "$DISTROPATH/etc/pam.d" ]; then
    cat > "$DISTROPATH/etc/pam.d/su" <<'PAM_EOF'
{pam_policy}
PAM_EOF
    cp "$DISTROPATH/etc/pam.d/su" "$DISTROPATH/etc/pam.d/su-l"
fi

if [ -f "$SETUP_SCRIPT" ]; then
    echo "[!] First time setup detected. Configuring users & groups..."
    chmod +x "$SETUP_SCRIPT"

    if run_chroot {shell} /{setup_relpath}; then
        echo "[*] Performing host-side security attribute cleanup..."
        {cleanup_command} "$DISTROPATH"
        rm -f "$SETUP_SCRIPT"
    else
        echo "[!] First time setup failed; it will run again on next launch."
    fi
fi

echo "[*] Entering Chroot as $TARGET_USER..."
echo "Type 'exit' to leave."

if [ -f "$DISTROPATH/usr/bin/su" ]; then
    SU_CMD="/usr/bin/su"
else
    SU_CMD="/bin/su"
fi

if [ -x "$(command -v busybox)" ]; then
    exec busybox chroot "$DISTROPATH" $SU_CMD - "$TARGET_USER"
else
    exec /system/bin/chroot "$DISTROPATH" $SU_CMD - "$TARGET_USER"
fi
'''

SETUP_PREAMBLE = '''#!/bin/sh
export PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin
unset TMPDIR TMP TEMP
export LC_ALL=C
mkdir -p /tmp
chmod 1777 /tmp
'''

PACKAGE_BOOTSTRAP = {
    DistroFamily.ALPINE: '''
echo ">>> (Alpine) Updating Repository..."
echo "http://dl-cdn.alpinelinux.org/alpine/edge/main" > /etc/apk/repositories
echo "http://dl-cdn.alpinelinux.org/alpine/edge/community" >> /etc/apk/repositories
apk update
echo ">>> (Alpine) Installing Base Tools..."
apk add bash shadow sudo nano net-tools git
''',
    DistroFamily.ARCH: '''
echo ">>> (Arch Linux) Configuring Pacman..."
sed -i 's/^DownloadUser/#DownloadUser/' /etc/pacman.conf
sed -i 's/^#DisableSandbox/DisableSandbox/' /etc/pacman.conf
sed -i 's/^CheckSpace/#CheckSpace/' /etc/pacman.conf
userdel -r alarm 2>/dev/null || true
echo ">>> (Arch Linux) Init Keyring..."
pacman-key --init
pacman-key --populate archlinuxarm
echo ">>> (Arch Linux) Updating..."
pacman -Sy --noconfirm
echo ">>> (Arch Linux) Installing Tools..."
pacman -S --noconfirm sudo nano net-tools git base-devel
''',
    DistroFamily.VOID: '''
echo ">>> (Void Linux) Updating..."
xbps-install -S
echo ">>> (Void Linux) Installing Tools..."
xbps-install -y -S sudo nano net-tools git bash shadow ca-certificates
''',
    DistroFamily.FEDORA: '''
echo ">>> (Fedora) Updating Repository..."
dnf update -y
echo ">>> (Fedora) Installing Tools..."
dnf install -y nano net-tools sudo git passwd shadow-utils util-linux attr findutils
''',
    DistroFamily.DEBIAN: '''
echo ">>> (Debian/Ubuntu/Kali) Updating..."
apt update -y
echo ">>> (Debian/Ubuntu/Kali) Installing Tools..."
apt install -y nano net-tools sudo git
''',
}


class ScriptGenerator:
    """Render and write the launch scripts for an installed tree"""

    def __init__(self, cleanup_command, data_partition='/data', shared_storage='/sdcard', shm_size='256M'):
        self.cleanup_command = cleanup_command
        self.data_partition = data_partition
        self.shared_storage = shared_storage
        self.shm_size = shm_size

    def render_start_script(self, distro_path, family):
        return START_TEMPLATE.format(
            distro_path=shlex.quote(str(distro_path)),
            setup_relpath=SETUP_SCRIPT_RELPATH,
            data_partition=shlex.quote(self.data_partition),
            shm_size=shlex.quote(self.shm_size),
            shared_storage=shlex.quote(self.shared_storage),
            pam_policy=PAM_SU_POLICY,
            shell=family.shell,
            cleanup_command=self.cleanup_command,
        )

    def render_setup_script(self, family, username, password):
        lines = [SETUP_PREAMBLE, PACKAGE_BOOTSTRAP.get(family, PACKAGE_BOOTSTRAP[DistroFamily.DEBIAN])]

        lines.append('''echo ">>> Configuring Sudo Access..."
if [ -f /etc/sudoers ] && ! grep -q '^%wheel ALL=(ALL:ALL) ALL' /etc/sudoers; then
    echo '%wheel ALL=(ALL:ALL) ALL' >> /etc/sudoers
fi

echo ">>> Configuring Network Groups..."
add_group() {
    grep -q "^$1:" /etc/group && return 0
    groupadd -g "$2" "$1" 2>/dev/null || groupadd "$1"
}
''')
        for name, gid in ANDROID_GROUPS:
            lines.append(f'add_group {name} {gid}\n')

        if family is DistroFamily.DEBIAN:
            lines.append('usermod -g aid_inet -a -G aid_inet,aid_net_raw _apt 2>/dev/null || true\n')
        lines.append(f'usermod -a -G {NETWORK_GROUP} root\n')

        user = shlex.quote(username)
        groups = ','.join(USER_GROUPS)
        credential = shlex.quote(f'{username}:{password}')
        lines.append(f'''
echo ">>> Creating User {user}..."
groupadd storage 2>/dev/null || true
groupadd wheel 2>/dev/null || true

if ! id {user} >/dev/null 2>&1; then
    useradd -m -g users -G {groups} -s /bin/bash {user}
fi
printf '%s\\n' {credential} | chpasswd

echo ">>> Done!"
''')
        return ''.join(lines)

    def write_start_script(self, script_path, distro_path, family):
        content = self.render_start_script(distro_path, family)
        try:
            with open(script_path, 'w', encoding='utf-8') as f:
                f.write(content)
            os.chmod(script_path, 0o755)
        except OSError as e:
            raise ConfigurationError(f"Failed to write start script {script_path}: {e}") from e
        logger.debug(f"Creating start script: {script_path}")
        return script_path

    def write_setup_script(self, tree, family, username, password):
        setup_path = os.path.join(tree, SETUP_SCRIPT_RELPATH)
        content = self.render_setup_script(family, username, password)
        try:
            os.makedirs(os.path.dirname(setup_path), exist_ok=True)
            with open(setup_path, 'w', encoding='utf-8') as f:
                f.write(content)
            # Holds the plaintext password until first boot consumes it
            os.chmod(setup_path, 0o700)
        except OSError as e:
            raise ConfigurationError(f"Failed to write setup script {setup_path}: {e}") from e
        logger.debug(f"Creating setup script: {setup_path}")
        return setup_path
